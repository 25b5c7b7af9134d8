"""
Response envelope for Transmission RPC calls
"""

import json
from typing import Any, Dict, Optional

SUCCESS = 'success'


class ResponseBuffer:
    """Holds exactly one envelope: a success carrying arguments, or a failure

    A failure replaces whatever was written before it.
    """

    def __init__(self):
        self._envelope: Optional[Dict[str, Any]] = None

    def success(self, tag: int, arguments: Optional[Dict[str, Any]] = None):
        self._envelope = {
            'result': SUCCESS,
            'tag': tag,
            'arguments': arguments if arguments is not None else {},
        }

    def fail(self, message: str, tag: int):
        self._envelope = {
            'result': message,
            'tag': tag,
        }

    @property
    def result(self) -> Optional[str]:
        return self._envelope['result'] if self._envelope else None

    def to_bytes(self) -> bytes:
        if self._envelope is None:
            return b''
        return json.dumps(self._envelope).encode('utf-8')
