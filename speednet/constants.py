"""
speednet Constants

Protocol and measurement constants shared by client and server.
"""

# Control port (TCP control + data, UDP data announce)
DEFAULT_PORT = 4000

# Test defaults
DEFAULT_BUFFER_LEN = 4096          # bytes per write/read
DEFAULT_DURATION = 10              # seconds
DEFAULT_PARALLEL = 1

# Buffer length clamp
MIN_BUFFER_LEN = 10
MAX_BUFFER_LEN = 10 * 1000 * 1000

# Framed messaging
MESSAGE_SENTINEL = b"\x00"
LOOKAHEAD_WINDOW = 4096            # frame must fit, sentinel included

# Minimum StreamReader limit once a TCP data stream leaves the hello phase
DATA_READER_LIMIT = 64 * 1024

# Rate shaping
THROTTLE_DELAY = 0.001             # seconds (coarse, ~1ms)

# UDP data streams
UDP_END_MARKERS = 3                # empty datagrams sent when a sender finishes
UDP_HELLO_ATTEMPTS = 5
UDP_HELLO_TIMEOUT = 1.0            # seconds between ClientStreamHello resends

# Stream reports kept by a server
MAX_SERVER_RESULTS = 1000

# DSCP occupies the upper six bits of the TOS / traffic class byte
DSCP_SHIFT = 2
MAX_DSCP = 63

# Linux SO_MARK, not exported by the socket module on every build
SO_MARK = 36

# TestId is an unsigned 32-bit integer
MAX_TEST_ID = 0xFFFFFFFF
