"""
execgate - Exec command security and approval engine
"""

__version__ = "0.1.0"
__logo__ = "🛡️"
