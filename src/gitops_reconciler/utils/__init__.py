# ABOUTME: Utilities package initialization for the GitOps reconciler
# ABOUTME: Contains shared utilities for the platform client, safety, and logging

"""
GitOps Reconciler Utilities Package

Shared utilities:
    - client.py: Kubernetes resource API client with retry logic
    - safety.py: Confirmation patterns and trigger guards
    - logging.py: Structured logging with correlation IDs and audit trail
"""
