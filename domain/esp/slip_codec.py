#!/usr/bin/env python3
# coding: utf-8
"""@brief SLIP framing used on the ESP serial bootloader link

Each packet is sent between two END bytes. Inside a packet, END and ESC bytes are replaced by two-byte escape sequences.
"""

from typing import Optional

from domain.esp.errors import FramingError

END = 0xc0
ESC = 0xdb
ESC_END = 0xdc
ESC_ESC = 0xdd

def escape(buffer: bytes) -> bytes:
    """@brief Escape a byte stream according to the SLIP escape scheme
    @param buffer The input buffer
    @return An equivalent buffer, with escape sequences added whenever needed
    """
    return bytes(buffer).replace(bytes([ESC]), bytes([ESC, ESC_ESC])).replace(bytes([END]), bytes([ESC, ESC_END]))

def unescape(buffer: bytes) -> bytes:
    """@brief Unescape the body of one SLIP frame (delimiters excluded)
    @param buffer The frame body, potentially including escape sequences
    @return An equivalent buffer, raw (without escape sequences)
    """
    result = bytearray()
    in_escape = False
    for b in buffer:
        if in_escape:
            if b == ESC_END:
                result.append(END)
            elif b == ESC_ESC:
                result.append(ESC)
            else:
                raise FramingError(f'Invalid escape sequence 0x{ESC:02x} 0x{b:02x}')
            in_escape = False
        elif b == ESC:
            in_escape = True
        elif b == END:
            raise FramingError('Unescaped delimiter inside frame payload')
        else:
            result.append(b)
    if in_escape:   # Last byte was an escape character but not followed by anything
        raise FramingError('Trailing escape character')
    return bytes(result)

def encode(packet: bytes) -> bytes:
    """@brief Wrap a packet into a SLIP frame
    @param packet The raw packet
    @return The framed bytes, ready to be written to the transport
    """
    return bytes([END]) + escape(packet) + bytes([END])


class SlipDecoder:
    """@brief Incremental SLIP decoder, accumulating received bytes until a full frame is available

    The closing delimiter of a frame is kept in the buffer, as it may also be the opening delimiter of the next one.
    A stray delimiter (in a boot message for instance) thus only produces one spurious frame, and the following frames are still found
    """
    def __init__(self):
        self.buffer = bytearray()
        self.discarded_bytes = 0
        self._after_frame = False    # The delimiter at the head of the buffer closed the last frame returned

    def feed(self, data: bytes) -> None:
        """@brief Append bytes received from the transport
        """
        self.buffer += data

    def pending(self) -> int:
        """@brief Get the number of buffered bytes not yet consumed
        @note The delimiter closing the last returned frame is not counted
        """
        if self._after_frame:
            return len(self.buffer) - 1
        return len(self.buffer)

    def reset(self) -> None:
        self.buffer = bytearray()
        self._after_frame = False

    def decode(self) -> Optional[bytes]:
        """@brief Extract the next complete frame from the bytes received so far
        @return The unescaped frame payload, or None if no complete frame has been received yet

        @note Bytes preceding the opening delimiter (boot messages for instance) are discarded.
              Two consecutive delimiters right after a frame separate two frames and do not produce an empty payload
        @warning Raises FramingError if the frame contains an invalid escape sequence. The offending frame is consumed anyway
        """
        while True:
            start = self.buffer.find(bytes([END]))
            if start < 0:
                self.discarded_bytes += len(self.buffer)
                self.buffer = bytearray()
                self._after_frame = False
                return None
            if start > 0:
                self.discarded_bytes += start
                del self.buffer[:start]
                self._after_frame = False
            end = self.buffer.find(bytes([END]), 1)
            if end < 0:
                return None
            frame_body = bytes(self.buffer[1:end])
            del self.buffer[:end]
            if len(frame_body) == 0 and self._after_frame:
                self._after_frame = False
                continue
            self._after_frame = True
            return unescape(frame_body)


def decode(stream: bytes) -> Optional[bytes]:
    """@brief Decode the first SLIP frame found in a byte stream
    @param stream The received bytes
    @return The unescaped payload of the first frame, or None if the stream does not contain a complete frame
    """
    decoder = SlipDecoder()
    decoder.feed(stream)
    return decoder.decode()
