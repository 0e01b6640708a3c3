"""Deployment tracking: webhook and poll ingestion of hosting status."""

from deployment.tracker import DeploymentCheck, DeploymentTracker, WebhookOutcome

__all__ = ["DeploymentCheck", "DeploymentTracker", "WebhookOutcome"]
