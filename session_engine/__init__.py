"""Adaptive session scheduling engine."""
