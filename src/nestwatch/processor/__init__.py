"""Nest processing: stats collection, nesting decisions and the processor manager."""
