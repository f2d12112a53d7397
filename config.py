import os
from dotenv import load_dotenv
from pathlib import Path

load_dotenv()

# credentials
ELEVENLABS_API_KEY = os.getenv("ELEVENLABS_API_KEY")

# logging config
LOG_LEVEL = os.getenv("LOG_LEVEL", "DEV").upper()

# file config
BASE_PATH = Path(__file__).parent
LOG_PATH = BASE_PATH / "log"
LOG_PATH.mkdir(exist_ok=True)

# Speech to text endpoint
# https://elevenlabs.io/docs/api-reference/speech-to-text/v-1-speech-to-text-realtime
ELEVENLABS_STT_REALTIME_URL = os.getenv(
    "ELEVENLABS_STT_REALTIME_URL", "wss://api.elevenlabs.io/v1/speech-to-text/realtime"
)
# The only realtime model offered at the moment.
ELEVENLABS_STT_REALTIME_MODEL = "scribe_v2_realtime"

# WebSocket transport.
# The server drops the connection after ~20 s without traffic, keep pings well below that.
STT_WS_OPEN_TIMEOUT_S = float(os.getenv("STT_WS_OPEN_TIMEOUT_S", "10"))
STT_WS_PING_INTERVAL_S = float(os.getenv("STT_WS_PING_INTERVAL_S", "10"))
STT_WS_PING_TIMEOUT_S = float(os.getenv("STT_WS_PING_TIMEOUT_S", "10"))
STT_WS_CLOSE_TIMEOUT_S = float(os.getenv("STT_WS_CLOSE_TIMEOUT_S", "5"))
STT_WS_MAX_QUEUE = int(os.getenv("STT_WS_MAX_QUEUE", "32"))

# Language of the audio, ISO 639-1 or ISO 639-3. Empty = server autodetect.
STT_LANGUAGE_CODE = os.getenv("STT_LANGUAGE_CODE", "")

# audio (transcribe.py)
AUDIO_SAMPLE_RATE = 16000
AUDIO_CHANNELS = 1
# 20ms-300ms chunks are all fine, server accepts chunks up to a few seconds.
CHUNK_MS = int(os.getenv("STT_CHUNK_MS", "100"))
# 1.0 = realtime, 0.0 = as fast as possible
REALTIME_FACTOR = float(os.getenv("STT_REALTIME_FACTOR", "1.0"))
# silence appended after the audio, so the final segment gets committed
FINAL_SILENCE_S = float(os.getenv("STT_FINAL_SILENCE_S", "1.0"))
# how long to wait for late transcripts after the final commit
IDLE_TIMEOUT_S = float(os.getenv("STT_IDLE_TIMEOUT_S", "20"))
