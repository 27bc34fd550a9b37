"""Tests for the orchestrator."""
