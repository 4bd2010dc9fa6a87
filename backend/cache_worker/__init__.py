"""Best-effort read-cache invalidation worker."""
