"""Kubernetes operator deploying Dynatrace OneAgent to every node."""
