"""Tests for the preview host."""
