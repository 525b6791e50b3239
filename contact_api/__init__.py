"""Contact form intake API package."""
