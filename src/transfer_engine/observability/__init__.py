"""Structured logging and operation correlation."""
