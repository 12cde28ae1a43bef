"""Environment-driven defaults shared by the CLI and the library code."""

import os

DEFAULT_EXIFTOOL = os.getenv("RIMAGE_EXIFTOOL", "exiftool")
DEFAULT_EXIFTOOL_TIMEOUT = float(os.getenv("RIMAGE_EXIFTOOL_TIMEOUT", "60"))
DEFAULT_SHUTDOWN_TIMEOUT = float(os.getenv("RIMAGE_SHUTDOWN_TIMEOUT", "5"))
DEFAULT_QUALITY = float(os.getenv("RIMAGE_QUALITY", "75"))
DEFAULT_THREADS = int(os.getenv("RIMAGE_THREADS", str(os.cpu_count() or 1)))
