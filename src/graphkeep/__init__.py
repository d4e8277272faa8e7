"""
graphkeep -- persistence and credential resilience for graph workspaces.

Keeps one in-memory workspace durably written to a local file and a
remote repository, and keeps the credentials for the remote side alive.
Nothing is written twice. Nothing expires silently.
"""

import os

__version__ = "0.1.0"

GRAPHKEEP_HOME = os.environ.get("GRAPHKEEP_HOME", "~/.graphkeep")
