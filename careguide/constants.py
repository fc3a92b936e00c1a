"""
Shared constants for CareGuide.

Single place to change paths, config defaults, session state key names.
Environment overrides are applied on top of these in careguide.config.
"""

# Paths (relative to project root)
MODEL_PATH = "models/yolov8n.pt"
EVENTS_LOG_PATH = "logs/events.jsonl"
TASKS_DIR = "tasks"
MEDIA_DIR = "media"               # step media paths ("/pickup.mp4") resolve under here

# Object detector defaults
CONF_MIN_DEFAULT = 0.45
IMGSZ_DEFAULT = 640

# Polling cadence (seconds)
MODEL_POLL_INTERVAL = 1.0         # object detector runs once per second
HEURISTIC_POLL_INTERVAL = 3.0     # edge heuristic captures a still every 3s

# --- Edge-density heuristic ---
EDGE_THRESHOLD_DEFAULT = 1000     # non-zero Canny pixels above this → positive
CANNY_LOW = 50
CANNY_HIGH = 100
CANNY_APERTURE = 3

# --- Step progress ---
PROGRESS_MIN = 0
PROGRESS_MAX = 100
COMPLETION_THRESHOLD = 80         # progress >= this completes the step
DEFAULT_MAX_ATTEMPTS = 3          # attempt cap when neither step nor task set one
FALLBACK_TIMEOUT_MIN = 10.0       # forced completion after a random delay in
FALLBACK_TIMEOUT_MAX = 11.0       # [MIN, MAX] seconds
SETTLE_DELAY = 2.0                # pause between completion and next step
MANUAL_SETTLE_DELAY = 1.0         # same, after "Mark as complete"
DEFAULT_REPETITION_SECONDS = 15   # re-narrate the instruction this often

# --- Hand stub ---
HAND_STUB_PROBABILITY = 0.3       # chance a simulated hand is "present" per tick
HAND_LANDMARK_COUNT = 21
# Normalised mouth region (x1, y1, x2, y2) used for hand-near-mouth checks
MOUTH_REGION = (0.3, 0.0, 0.7, 0.5)

# --- Camera ---
CAMERA_MAX_ATTEMPTS = 3
CAMERA_BACKOFF_SECONDS = 1.0      # sleep attempt * this between attempts
CAMERA_READY_TIMEOUT = 10.0       # first frame must arrive within this
CAMERA_WIDTH = 640
CAMERA_HEIGHT = 480

# --- Narration ---
VOICE_LANG = "en"
SPEECH_RATE = 0.9                 # multiplier on the engine's default rate
SPEECH_VOLUME = 1.0
FALLBACK_TTS_URL = "https://translate.google.com/translate_tts"
FALLBACK_TTS_TIMEOUT = 10.0

# Repetition modes (task player)
REPETITION_FIXED = "fixed"
REPETITION_AI = "ai"

# Session state keys (Streamlit front-end)
KEY_NAV = "nav"
KEY_TASK_ID = "task_id"
KEY_REPETITION_MODE = "repetition_mode"
KEY_CUSTOM_INTERVAL = "custom_interval"
KEY_DEBUG = "debug_mode"
KEY_VOLUME = "volume"
KEY_CHAT = "guidance_chat"
KEY_AGE = "guidance_age"
KEY_CONDITION = "guidance_condition"
KEY_SESSIONS = "task_sessions"

PLAYER_VIEW_KEY = "task_player"

# Guidance plan filters
AGES = list(range(5, 18))
CONDITIONS = ["autism", "cerebralPalsy", "combined"]
CONDITION_LABELS = {
    "autism": "Autism",
    "cerebralPalsy": "Cerebral Palsy",
    "combined": "Combined",
}
