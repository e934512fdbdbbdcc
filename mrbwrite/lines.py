# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Line reassembly for the mrbwrite byte stream.

The device frames nothing beyond CRLF line endings, and serial reads
return arbitrary chunks. ``LineSplitter`` turns those chunks back into
text lines, carrying both the unterminated tail and any half-received
UTF-8 sequence over to the next chunk.
"""

import codecs
from typing import List, Tuple

LINE_DELIMITER = "\r\n"


class LineSplitter:
    """
    Incremental CRLF line splitter.

    Example:
        splitter = LineSplitter()
        text, lines = splitter.feed(b"+OK mru")
        text, lines = splitter.feed(b"by/c\\r\\n")
        # lines == ["+OK mruby/c"], splitter.pending == ""
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder_factory = codecs.getincrementaldecoder(encoding)
        self._decoder = self._decoder_factory(errors="replace")
        self.pending = ""

    def feed(self, data: bytes) -> Tuple[str, List[str]]:
        """
        Decode a received chunk and split off complete lines.

        Args:
            data: Bytes as returned by one serial read

        Returns:
            Tuple of (decoded text of this chunk, completed lines in order)
        """
        return self._split(self._decoder.decode(data))

    def flush(self) -> Tuple[str, List[str]]:
        """Push residual decoder state through the splitter."""
        return self._split(self._decoder.decode(b"", final=True))

    def reset(self) -> None:
        """Drop the pending tail and any buffered partial character."""
        self._decoder = self._decoder_factory(errors="replace")
        self.pending = ""

    def _split(self, text: str) -> Tuple[str, List[str]]:
        if not text:
            return text, []
        parts = (self.pending + text).split(LINE_DELIMITER)
        self.pending = parts.pop()
        return text, parts
