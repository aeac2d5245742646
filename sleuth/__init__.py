"""Sleuth: tool-calling investigation agent runtime."""
