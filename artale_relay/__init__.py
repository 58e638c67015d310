"""
Artale broadcast → Discord relay

Listens to the MapleStory Artale marketplace broadcast feed and notifies
Discord users whose keyword subscriptions match each new broadcast.
"""

__version__ = "0.1.0"
