"""Externally owned resources the coordinator reconciles."""
