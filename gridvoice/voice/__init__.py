"""
Voice module for utility customer-service phone calls.

This module provides real-time voice interaction using:
- Twilio Media Streams for telephony
- OpenAI Realtime API for speech-to-speech processing
"""

from .app import app, main
from .bridge import AudioBridge
from .channel import ChannelState, TransportChannel
from .openai_realtime import OpenAIRealtimeChannel
from .session import CallSession, SessionController
from .tools import ToolCallCoordinator, ToolRegistry
from .twilio_stream import TwilioMediaChannel

__all__ = [
    "app",
    "main",
    "AudioBridge",
    "CallSession",
    "ChannelState",
    "OpenAIRealtimeChannel",
    "SessionController",
    "ToolCallCoordinator",
    "ToolRegistry",
    "TransportChannel",
    "TwilioMediaChannel",
]
