"""crashpack - collect post-mortem and live diagnostics for a Linux service.

Usage:
    crashpack process <pid>            # running process
    crashpack core <core> [binary]     # crashed process (core file)
"""

__version__ = "1.0.0"
