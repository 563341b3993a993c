"""
Tuneshift Service
Twitch EventSub events mapped to timed pitch/speed effects and chat messages
"""

__version__ = "0.1.0"
