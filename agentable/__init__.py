"""
agentable - managed tables with computed columns, and tool-using agents
whose memory lives in those tables.
"""

__version__ = "0.1.0"
