"""Git pull agent for Jelly Stream Viewer.

A lightweight service that backs up local configuration, pulls the latest
source, reinstalls dependencies and rebuilds the app on demand, pushing
live progress to the status sink.
"""

__version__ = "0.1.0"
