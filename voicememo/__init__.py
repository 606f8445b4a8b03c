"""
voicememo: turn recorded meetings into transcripts and summaries through a
remote speech task service.
"""

__version__ = "0.1.0"
