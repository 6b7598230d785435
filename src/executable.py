"""
Image encoding/decoding library for the COE assembler.

COE listing (memory initialization file):
  memory_initialization_radix=2;
  memory_initialization_vector=
  <32-bit word in binary>,
  ...
  <32-bit word in binary>;

Binary image (zstd compressed):
  Bytes 0-3:   MAGIC
  Bytes 4-5:   VERSION (little endian)
  Bytes 6-9:   Base offset (little endian)
  Bytes 10-13: Word count (little endian)
  Bytes 14-:   Words, 4 bytes each, big endian
"""

from zstd import compress, decompress
from dataclasses import dataclass
from typing import List
import struct
import re

from instruction import Instruction

# Magic bytes for image format
MAGIC = b'COEA'
VERSION = 1
HEADER = '<4sHII'
HEADER_SIZE = struct.calcsize(HEADER)

COE_RADIX_RE = re.compile(r'memory_initialization_radix\s*=\s*(\d+)\s*;', re.IGNORECASE)
COE_VECTOR_RE = re.compile(r'memory_initialization_vector\s*=', re.IGNORECASE)


@dataclass
class Image:
    """Assembled program: encoded words in address order."""
    base: int = 0
    words: List[int] = None

    def __post_init__(self):
        if self.words is None:
            self.words = []

    def to_coe(self) -> str:
        """Render the words as a radix-2 COE listing."""
        lines = [
            "memory_initialization_radix=2;",
            "memory_initialization_vector=",
        ]
        if not self.words:
            lines.append(";")
        for i, word in enumerate(self.words):
            end = ";" if i == len(self.words) - 1 else ","
            lines.append(f"{word & 0xFFFFFFFF:032b}{end}")
        return '\n'.join(lines) + '\n'

    @classmethod
    def from_coe(cls, text: str, base: int = 0) -> 'Image':
        """Parse a COE listing back into words."""
        radix_match = COE_RADIX_RE.search(text)
        vector_match = COE_VECTOR_RE.search(text)
        if not radix_match or not vector_match:
            raise ValueError("Missing COE radix or vector header")

        radix = int(radix_match.group(1))
        if radix not in (2, 10, 16):
            raise ValueError(f"Unsupported COE radix: {radix}")

        image = cls(base=base)
        for token in re.split(r'[,;\s]+', text[vector_match.end():]):
            if not token:
                continue
            try:
                word = int(token, radix)
            except ValueError:
                raise ValueError(f"Invalid COE word: {token}")
            if word > 0xFFFFFFFF:
                raise ValueError(f"COE word wider than 32 bits: {token}")
            image.words.append(word)
        return image

    def encode(self) -> bytes:
        """Encode image to compressed bytes."""
        header = struct.pack(HEADER, MAGIC, VERSION, self.base, len(self.words))
        body = b''.join(struct.pack('>I', word & 0xFFFFFFFF) for word in self.words)
        return compress(header + body, 22)

    @classmethod
    def decode(cls, data: bytes) -> 'Image':
        """Decode compressed bytes to an image."""
        data = decompress(data)

        if len(data) < HEADER_SIZE:
            raise ValueError("Data too short for image header")

        magic, version, base, count = struct.unpack(HEADER, data[:HEADER_SIZE])

        if magic != MAGIC:
            raise ValueError(f"Invalid magic bytes: {magic}")
        if version > VERSION:
            raise ValueError(f"Unsupported version: {version}")
        if len(data) != HEADER_SIZE + 4 * count:
            raise ValueError(f"Expected {count} words, got {len(data) - HEADER_SIZE} bytes")

        words = struct.unpack(f'>{count}I', data[HEADER_SIZE:])
        return cls(base=base, words=list(words))


def disassemble(image: Image) -> str:
    """Disassemble image to human-readable format."""
    lines = [
        f"// Base offset: 0x{image.base:08X}",
        f"// Length: {len(image.words)} words",
        "",
    ]

    for i, word in enumerate(image.words):
        addr = image.base + 4 * i
        try:
            text = str(Instruction.decode(word))
        except ValueError:
            text = "<invalid>"
        lines.append(f"0x{addr:08X}: {word:08X}  {text}")

    return '\n'.join(lines)


def main():
    import argparse
    import sys

    parser = argparse.ArgumentParser(description='COE Disassembler')
    parser.add_argument('infile', help='COE listing or binary image')
    parser.add_argument('--base', '-b', type=lambda x: int(x, 0), default=0,
                        help='Base offset for COE listings')

    args = parser.parse_args()

    try:
        if args.infile.endswith('.coe'):
            with open(args.infile, 'r') as f:
                image = Image.from_coe(f.read(), base=args.base)
        else:
            with open(args.infile, 'rb') as f:
                image = Image.decode(f.read())
    except FileNotFoundError:
        print(f"Error: File not found: {args.infile}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Error loading image: {e}", file=sys.stderr)
        sys.exit(1)

    print(disassemble(image))


if __name__ == '__main__':
    main()
