"""Outbound voice-AI campaign orchestration.

Tracks in-flight calls, reconciles provider webhooks, drains campaign
queues in batches and bridges qualified leads into agent conferences.
"""

__version__ = "0.1.0"
