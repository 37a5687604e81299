"""Real-time voice agent relaying Twilio phone calls to the OpenAI Realtime API."""

__version__ = "1.0.0"
