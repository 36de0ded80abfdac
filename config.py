# FaceFlow POS Configuration
import os
from pathlib import Path

# Paths
BASE_DIR = Path(__file__).resolve().parent
DATA_DIR = Path(os.getenv("FACEFLOW_DATA_DIR", BASE_DIR / "data"))
DB_URL = os.getenv("FACEFLOW_DB_URL")  # Defaults to sqlite in DATA_DIR
MEDIA_DIR_NAME = "media"    # Served at /data (under DATA_DIR)
FACES_DIR_NAME = "faces"    # Registration snapshots (under MEDIA_DIR_NAME)
MENU_DIR_NAME = "menu"      # Menu item images (under MEDIA_DIR_NAME)
MODEL_PATH = Path(os.getenv("FACEFLOW_MODEL_PATH", BASE_DIR / "models" / "face_descriptor_128.onnx"))

# Face Recognition
SIM_THRESHOLD = 0.6         # similarity = 1 - euclidean distance; must be strictly above
DESCRIPTOR_LENGTH = 128     # Descriptor vector length
AMBIGUOUS_FACE_RATIO = 1.5  # Largest face must be this much bigger than the next one

# Face Processing
INPUT_SIZE = (112, 112)     # Descriptor network input size
FACE_MARGIN = 0.1           # Crop margin around the detected box
MIN_FACE_SIZE = (30, 30)    # Minimum face size for detection
SNAPSHOT_SIZE = 200         # Registration snapshot is SNAPSHOT_SIZE x SNAPSHOT_SIZE
SNAPSHOT_PADDING = 50       # Pixels added around the box before cropping the snapshot
JPEG_QUALITY = 90

# Scan loop (seconds)
GREET_TICK_INTERVAL = 2.0
CHECKOUT_TICK_INTERVAL = 1.5
FORGET_DELAY = 3.0
CHECKOUT_MAX_ATTEMPTS = 5

# Camera
CAMERA_INDEX = int(os.getenv("FACEFLOW_CAMERA_INDEX", "0"))
FRAME_WIDTH = 640
FRAME_HEIGHT = 480

# POS
TAX_RATE = 0.08
CURRENCY = "$"
ORDER_HISTORY_LIMIT = 10
FAVORITES_ORDER_WINDOW = 20  # Recent orders scanned for a customer's usual items
FAVORITES_LIMIT = 6
MENU_IMAGE_MAX_SIZE = (800, 800)

# Server
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("FACEFLOW_LOG_LEVEL", "INFO")
