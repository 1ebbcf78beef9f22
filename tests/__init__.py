"""Tests for delegated-orchestrator."""
