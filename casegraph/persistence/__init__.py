"""Saving and loading graph documents."""
