"""Recurring role-gated lottery bot for Discord."""
