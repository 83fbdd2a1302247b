__all__ = ["__version__"]

__version__ = "0.1.0"

import logging

# PyAV forwards ffmpeg's own chatter through the "libav" logger
logging.getLogger("libav").setLevel(logging.ERROR)
