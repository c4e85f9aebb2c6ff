"""
modarc: a group chat simulation with centralized moderation.

Every user, group and the moderator run as trio tasks. They talk
only through one-way byte streams and topic-addressed message buses.
"""

__version__ = "0.1.0"
