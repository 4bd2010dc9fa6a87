"""Session scheduling worker and rolling-window sweep."""
