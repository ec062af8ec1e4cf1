"""
whisprlocal: Local push-to-talk speech-to-text service

Downloads and manages whisper.cpp models, keeps exactly one of them loaded,
and transcribes microphone sessions on demand for clients connected over a
Unix socket.
"""

__version__ = "0.1.0"
