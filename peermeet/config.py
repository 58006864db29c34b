"""
Configuration constants for the PeerMeet session core.
"""

import os

# --- File transfer ---
FILE_CHUNK_SIZE = 16 * 1024          # Max bytes per outgoing file-chunk message
MAX_FILE_SIZE = 100 * 1024 * 1024    # Largest file accepted for sending

# --- Networking ---
TCP_PORT = 5100              # Default TCP port a LAN host listens on
UDP_PORT = 5101              # UDP port for room beacons
BROADCAST_INTERVAL = 2       # Seconds between room beacons
ROOM_TIMEOUT = 10            # Seconds before a silent room is forgotten
LOOKUP_TIMEOUT = 8           # Seconds a joiner waits to hear the room beacon

# Largest framed payload accepted from a byte-stream transport.  A chunk
# travels as a JSON list of byte values, so a full chunk needs roughly
# four bytes of text per byte of data.
MAX_FRAME_SIZE = 1024 * 1024

# --- Identity ---
ID_LENGTH = 12               # Hex characters in chat / file / participant ids

COLORS = [
    "#f87171", "#fb923c", "#facc15", "#a3e635", "#4ade80",
    "#34d399", "#2dd4bf", "#22d3ee", "#38bdf8", "#60a5fa",
    "#818cf8", "#a78bfa", "#c084fc", "#e879f9", "#f472b6",
]

# --- File Storage ---
DOWNLOADS_DIR = os.path.join(os.path.expanduser("~"), "Downloads", "PeerMeet")
