"""
Shipyard - self-hosted deployment orchestrator.

Clones a repository, detects what kind of Node.js project it is, installs and
builds it, keeps it running under PM2 and publishes it through nginx. A small
metadata record per project makes later updates, status checks and removal
safe.
"""

__version__ = "0.1.0"
__author__ = "Shipyard"
