"""Cross-service device reconciliation for Autopilot, Intune and Entra ID."""

__version__ = '1.0.0'
