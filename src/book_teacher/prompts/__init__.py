"""Markdown prompt templates and their registry."""
