"""Telephony media handling."""

from campaign_bridge.telephony.audio_monitor import AudioStream, AudioStreamMonitor

__all__ = ["AudioStream", "AudioStreamMonitor"]
