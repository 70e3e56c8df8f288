"""Task-to-pull-request pipeline.

This package turns a natural-language change request plus a repository URL
into an opened pull request, providing:
- GitHub webhook ingestion with HMAC signature verification
- A durable job queue with a bounded worker pool
- The checkpointed fork → sandbox → clone → generate → commit → PR pipeline
- Session-token authentication for protected endpoints
- Event emission and Prometheus metrics
"""
