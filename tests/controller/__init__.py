"""Tests for the Application controller."""
