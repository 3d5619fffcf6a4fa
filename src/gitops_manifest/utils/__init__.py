# ABOUTME: Utilities package initialization for the manifest service
# ABOUTME: Contains shared utilities for cluster access, JSON patching and logging

"""
Manifest service utilities package

Shared utilities:
    - kubernetes.py: Kubernetes API client wrapper with retry logic
    - jsonpatch.py: JSON merge patch and dotted-path get/set
    - logging.py: Structured logging with correlation IDs
"""
