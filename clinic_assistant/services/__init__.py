"""Collaborator clients (LLM, clinic CRM, web content) plus caching and metrics."""
