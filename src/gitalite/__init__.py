"""
gitalite — a personal wiki that lives in a git repository.

Pages are plain-text files. Every edit is one attributed commit,
written by a verified IndieAuth identity and pushed to a single
canonical remote.
"""

import os

__version__ = "0.1.0"
__author__ = "callym"

CONFIG_PATH = os.environ.get("GITALITE_CONFIG", "gitalite.yaml")
