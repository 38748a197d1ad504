"""
Azure DevOps ↔ Chat Relay

Links chat users to Azure DevOps projects, registers service-hook
subscriptions on their behalf, and relays webhook callbacks into channels.
"""

__version__ = "0.1.0"
