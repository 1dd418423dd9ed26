"""Execution memory: per-run execution contexts, the shared knowledge base, and team memory."""
