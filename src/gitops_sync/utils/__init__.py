# ABOUTME: Utilities package initialization for the GitOps sync controller
# ABOUTME: Contains HTTP clients, safety guards, and logging

"""
GitOps Sync Utilities Package

Shared utilities:
    - client.py: Cluster API client with retry logic and error classification
    - store.py: Manifest store client
    - safety.py: Read-only guard, rate limiting and secret masking
    - logging.py: Structured logging with correlation IDs
"""
