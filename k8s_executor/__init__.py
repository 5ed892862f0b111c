"""Kubernetes pod generation for devnet nodes."""
