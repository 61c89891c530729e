"""Typed request boundary."""
from .schemas import Command, parse_command, serialize

__all__ = ["Command", "parse_command", "serialize"]
