"""Tests for the desired-state fetchers."""
