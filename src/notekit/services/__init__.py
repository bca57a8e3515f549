"""Service layer for notekit."""
