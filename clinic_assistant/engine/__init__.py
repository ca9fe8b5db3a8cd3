"""Query-understanding and reply-orchestration engine."""
