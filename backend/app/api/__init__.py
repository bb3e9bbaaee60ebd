"""HTTP surface of the realtime service."""
