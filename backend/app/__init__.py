"""Judgeline realtime backend application."""
