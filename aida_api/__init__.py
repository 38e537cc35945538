"""AIDA engine service.

This package contains the FastAPI application and the orchestration core
for context-aware response generation.

Main components:
- main.py: FastAPI application factory and health endpoints
- orchestrators/request_coordinator.py: dedup, timeout and response pipeline
- tools/: embedding client, hybrid scoring, retrieval and context aggregation
- composer/: prompts, quality gates and channel formatting
- llm/: language model completion provider
"""

# Avoid importing the FastAPI app at package import time.
__all__ = []
