"""RuntimeHub - installer and command bridge for external native runtimes"""

__version__ = "0.4.0"
