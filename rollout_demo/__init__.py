"""Canary/blue-green demo backend: failure injection, version tagging, status counters."""
