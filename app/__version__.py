"""Version information for the live-chat relay."""

import os

__version__ = "0.3.0"
__version_info__ = tuple(int(i) for i in __version__.split(".") if i.isdigit())

# Build information (populated during CI/CD)
__build_date__ = os.getenv("BUILD_DATE") or None
__commit_sha__ = os.getenv("COMMIT_SHA") or None
