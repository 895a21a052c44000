"""Sindi — conversational property search assistant backend."""
