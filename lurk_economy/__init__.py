"""lurk-economy — Lurk points, leveling and chat-command economy for a stream channel."""
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("lurk-economy")
except PackageNotFoundError:
    __version__ = "0.0.0"
