# MIT License
#
# Copyright (c) 2025 Timothy J Fontaine
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.

"""
Error types raised at the bootstrap layer's fatal boundaries.
"""

from typing import Optional


class BulwarkError(Exception):
    """Base class for all bulwark errors."""


class PortBindError(BulwarkError):
    """
    The listener could not bind for a reason other than the port being in use.

    This is terminal for the bind controller; it is never retried.
    """

    def __init__(self, host: str, port: int, cause: OSError):
        super().__init__(f"Could not listen on {host}:{port}: {cause}")
        self.host = host
        self.port = port
        self.cause = cause


class SessionStoreError(BulwarkError):
    """A session store operation failed. Reported to listeners, never raised."""

    def __init__(
        self, operation: str, cause: Exception, session_id: Optional[str] = None
    ):
        detail = f" for session '{session_id}'" if session_id else ""
        super().__init__(f"Session store {operation} failed{detail}: {cause}")
        self.operation = operation
        self.cause = cause
        self.session_id = session_id
