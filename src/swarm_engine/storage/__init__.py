"""Durable storage for swarms, tasks, sandboxes and orchestration config."""
