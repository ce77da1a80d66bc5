"""
docsync -- encrypted document synchronization.

Keep a library of documents on every device you use. Content travels
to a private per-user folder sealed with a key only your devices can
derive. The remote store never sees plaintext.
"""

import os

__version__ = "0.1.0"

DOCSYNC_HOME = os.environ.get("DOCSYNC_HOME", "~/.docsync")
