"""Core types shared by every engine component."""
