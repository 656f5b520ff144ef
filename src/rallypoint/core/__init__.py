"""Rallypoint engines: membership, visibility, promotion, chapters and content."""
