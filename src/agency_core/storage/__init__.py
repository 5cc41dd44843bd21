"""Durable storage for run coordination."""
