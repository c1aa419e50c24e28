"""
Tests for teamsync.
"""
