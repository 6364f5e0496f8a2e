"""Deployment pipeline, persistence, and CLI handlers."""
