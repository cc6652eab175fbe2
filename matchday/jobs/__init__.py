"""Fixture job scheduling, queue job handlers and periodic task tracking."""
