"""Test suite for Relay Desk."""
