"""Tests for subagent-orchestrator."""
