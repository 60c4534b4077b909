"""Moderation and abuse-control decision engine."""
