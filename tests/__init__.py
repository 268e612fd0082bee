"""Tests for the agent orchestration runtime."""
