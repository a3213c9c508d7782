"""Konsolen-Client für die SiteClock API."""
