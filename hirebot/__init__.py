"""HireBot interview service."""
