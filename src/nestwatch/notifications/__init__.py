"""Outbound nest webhooks."""
