"""Fixture application and helpers shared by the page cache tests."""
