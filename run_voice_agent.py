#!/usr/bin/env python3
"""
Run script for the utility voice agent.

Usage:
    python run_voice_agent.py

Make sure to:
1. Copy .env.example to .env and fill in OPENAI_API_KEY
2. Start ngrok: ngrok http 8080
3. Set HOSTNAME in .env to the ngrok host (no scheme)
4. Configure your Twilio phone number:
   - Voice webhook: POST https://{HOSTNAME}/incoming-call
   - Status callback: POST https://{HOSTNAME}/call-status-update
"""

import logging

# Configure logging VERY early, before any other imports that might use it
# This suppresses noisy debug output from third-party libraries
logging.getLogger("websockets").setLevel(logging.WARNING)
logging.getLogger("websockets.client").setLevel(logging.WARNING)
logging.getLogger("websockets.server").setLevel(logging.WARNING)
logging.getLogger("python_multipart").setLevel(logging.WARNING)
logging.getLogger("python_multipart.multipart").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def main():
    """Run the voice agent server."""
    import uvicorn
    from gridvoice.utils.config import settings

    print("=" * 60)
    print("Smalltown Gas and Electric Voice Agent")
    print("=" * 60)
    print(f"Server: http://{settings.host}:{settings.port}")
    print(f"Public host: {settings.hostname}")
    print(f"OpenAI Model: {settings.openai_realtime_model}")
    print(f"Voice: {settings.openai_realtime_voice}")
    print("=" * 60)
    print()
    print("Endpoints:")
    print(f"  - Health: http://{settings.host}:{settings.port}/health")
    print(f"  - Incoming call: POST https://{settings.hostname}/incoming-call")
    print(f"  - Call status: POST https://{settings.hostname}/call-status-update")
    print(f"  - Media stream: WS wss://{settings.hostname}/media-stream/{{CallSid}}")
    print(f"  - Active Calls: http://{settings.host}:{settings.port}/calls")
    print()

    # Use "info" log level for uvicorn to avoid verbose websocket frame logging
    uvicorn.run(
        "gridvoice.voice.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="info",
    )


if __name__ == "__main__":
    main()
