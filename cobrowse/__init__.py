"""Shared-session co-browsing: signaling relay and browser automation engine."""
