"""Outbound platform queue and isolated task workers for the chat bot backend."""
