"""Data models for notekit."""
