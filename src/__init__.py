"""
TopicGate - Conversation to Forum Thread Bridge

Relays conversations from a phone-number based messenger into dedicated
threads of a forum-style supergroup, and relays thread replies back.
"""

__version__ = "1.0.0"
__author__ = "TopicGate Development Team"
