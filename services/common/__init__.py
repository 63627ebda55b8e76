"""Helpers shared by the Stratum API and the course generator service."""
