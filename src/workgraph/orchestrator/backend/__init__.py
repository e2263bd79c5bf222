"""Executor backends that turn a dispatch request into a worker command."""
