"""Aggregation, refresh, credential and recommendation services."""
