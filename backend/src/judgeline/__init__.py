"""Realtime synchronization core of the judge Q&A platform."""
