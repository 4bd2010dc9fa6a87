"""Purchase creation worker (PURCHASE_CONFIRMED -> PURCHASE_CREATED)."""
