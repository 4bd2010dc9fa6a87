"""Trainer allocation worker (PURCHASE_CREATED -> TRAINER_ALLOCATED)."""
