#!/usr/bin/env python3
"""
COE Assembler

Usage: python assemble.py <infile> [outfile=<infile>.coe]

Assembly language syntax:
    // comment
    label:
    label: instruction operands
    instruction operands

Instructions:
    Register:   add, comp, and, xor, sllv, srlv, srav     rs, rt
    Shift:      sll, srl, sra                             rs, shamt
    Immediate:  addi, compi                               rs, imm
    Memory:     lw, sw                                    rt, offset(rs)
    Jump:       b, bl                                     label
                br                                        rs
    Branch:     bltz, bz, bnz                             rs, label
                bcy, bncy                                 label
    Pseudo:     push rs       ->  sw rs, 0($sp); addi $sp, -4
                pop rd        ->  addi $sp, 4; lw rd, 0($sp)
                mov rd, rs    ->  xor rd, rd; add rd, rs

Operands:
    $zero..$ra      Registers
    -0x10, 0b101    Numbers: optional sign, optional 0x/0b/0o prefix
    label           Label reference
"""

import sys
import re
from typing import Dict, Iterable, List, Tuple
from instruction import (
    Instruction, Label, AssemblerError, OpcodeMissing, UnknownInstruction,
    InvalidArgCount, InvalidNumber, InvalidInstructionFormat, UndefinedLabel,
    DuplicateLabel, FORMATS, SP, lookup_register,
)
from executable import Image

LABEL_DEF_RE = re.compile(r'^\s*([A-Za-z0-9_]+):')
LABEL_NAME_RE = re.compile(r'^[A-Za-z0-9_]+$')
NUMBER_RE = re.compile(r'^([+-]?)(0[xbo])?([0-9A-Za-z]+)$')
MEMORY_RE = re.compile(r'^\s*(\$\w+)\s*,\s*([+-]?[0-9A-Za-z]+)\s*\(\s*(\$\w+)\s*\)\s*$')

RADIXES = {'0x': 16, '0b': 2, '0o': 8, None: 10}

PSEUDO_INSTRUCTIONS = ('push', 'pop', 'mov')


def strip_comment(line: str) -> str:
    """Remove a // comment and surrounding whitespace."""
    if '//' in line:
        line = line[:line.index('//')]
    return line.strip()


def detect_label(line: str):
    """Return (label, rest_of_line) for a label definition, else None."""
    match = LABEL_DEF_RE.match(line)
    if not match:
        return None
    return match.group(1), line[match.end():].strip()


def split_line(line: str) -> Tuple[str, str]:
    """Split a line into lowercase mnemonic and operand text."""
    parts = line.strip().split(None, 1)
    if not parts:
        raise OpcodeMissing()
    mnemonic = parts[0].lower()
    operand_str = parts[1] if len(parts) > 1 else ""
    return mnemonic, operand_str


def split_operands(operand_str: str, expected: int) -> List[str]:
    """Split operand text on commas, checking the operand count."""
    if not operand_str.strip():
        operands = []
    else:
        operands = [op.strip() for op in operand_str.split(',')]
    if len(operands) != expected:
        raise InvalidArgCount(expected, len(operands))
    return operands


def parse_number(token: str, bits: int = 16, signed: bool = True) -> int:
    """Parse a numeric literal into a `bits`-wide unsigned bit pattern.

    Negative values become their two's complement pattern, so -16 on a
    16-bit field is 0xFFF0. With signed=False only 0..2**bits-1 is allowed.
    """
    text = token.strip()
    match = NUMBER_RE.match(text)
    if not match:
        raise InvalidNumber(text)

    sign, prefix, digits = match.groups()
    radix = RADIXES[prefix]
    try:
        value = int(digits, radix)
    except ValueError:
        raise InvalidNumber(text, radix)
    if sign == '-':
        value = -value

    low = -(1 << (bits - 1)) if signed else 0
    high = (1 << bits) - 1
    if not low <= value <= high:
        raise InvalidNumber(text, radix)
    return value & high


def parse_label_name(token: str) -> str:
    name = token.strip()
    if not LABEL_NAME_RE.match(name):
        raise InvalidInstructionFormat(token)
    return name


def parse_register_only(operand_str: str) -> int:
    """Operands: rs"""
    (reg,) = split_operands(operand_str, 1)
    return lookup_register(reg)


def parse_register_pair(operand_str: str) -> Tuple[int, int]:
    """Operands: rs, rt"""
    first, second = split_operands(operand_str, 2)
    return lookup_register(first), lookup_register(second)


def parse_register_value(operand_str: str, bits: int = 16, signed: bool = True) -> Tuple[int, int]:
    """Operands: rs, number"""
    reg, value = split_operands(operand_str, 2)
    return lookup_register(reg), parse_number(value, bits, signed)


def parse_memory(operand_str: str) -> Tuple[int, int, int]:
    """Operands: rt, offset(rs). Returns (rt, offset, rs)."""
    split_operands(operand_str, 2)
    match = MEMORY_RE.match(operand_str)
    if not match:
        raise InvalidInstructionFormat(operand_str.strip())
    rt, offset, base = match.groups()
    return lookup_register(rt), parse_number(offset), lookup_register(base)


def parse_register_label(operand_str: str) -> Tuple[int, str]:
    """Operands: rs, label"""
    reg, name = split_operands(operand_str, 2)
    return lookup_register(reg), parse_label_name(name)


def parse_label_only(operand_str: str) -> str:
    """Operands: label"""
    (name,) = split_operands(operand_str, 1)
    return parse_label_name(name)


def expand_pseudo(mnemonic: str, operand_str: str) -> List[Instruction]:
    """Rewrite a pseudo-instruction into the primitive instructions it stands for."""
    if mnemonic == 'push':
        reg = parse_register_only(operand_str)
        return [
            Instruction('sw', rs=SP, rt=reg, imm=0),
            Instruction('addi', rs=SP, imm=-4 & 0xFFFF),
        ]
    if mnemonic == 'pop':
        reg = parse_register_only(operand_str)
        return [
            Instruction('addi', rs=SP, imm=4),
            Instruction('lw', rs=SP, rt=reg, imm=0),
        ]
    if mnemonic == 'mov':
        dst, src = parse_register_pair(operand_str)
        # The xor would clear the source before the add reads it
        if dst == src:
            raise InvalidInstructionFormat(operand_str.strip())
        return [
            Instruction('xor', rs=dst, rt=dst),
            Instruction('add', rs=dst, rt=src),
        ]
    raise UnknownInstruction(mnemonic)


def parse_instruction(line: str) -> List[Instruction]:
    """Parse one instruction line into one or more primitive instructions."""
    mnemonic, operand_str = split_line(line)

    if mnemonic in PSEUDO_INSTRUCTIONS:
        return expand_pseudo(mnemonic, operand_str)

    fmt = FORMATS.get(mnemonic)
    if fmt is None:
        raise UnknownInstruction(mnemonic)

    if fmt == 'reg':
        rs, rt = parse_register_pair(operand_str)
        instr = Instruction(mnemonic, rs=rs, rt=rt)
    elif fmt == 'shift':
        # Shift amount sits in the rt field
        rs, shamt = parse_register_value(operand_str, bits=5, signed=False)
        instr = Instruction(mnemonic, rs=rs, rt=shamt)
    elif fmt == 'imm':
        rs, imm = parse_register_value(operand_str)
        instr = Instruction(mnemonic, rs=rs, imm=imm)
    elif fmt == 'mem':
        rt, imm, rs = parse_memory(operand_str)
        instr = Instruction(mnemonic, rs=rs, rt=rt, imm=imm)
    elif fmt == 'jr':
        instr = Instruction(mnemonic, rs=parse_register_only(operand_str))
    elif fmt == 'abs':
        instr = Instruction(mnemonic, label=Label(parse_label_only(operand_str)))
    elif fmt == 'rel_reg':
        rs, name = parse_register_label(operand_str)
        instr = Instruction(mnemonic, rs=rs, label=Label(name, relative=True))
    else:
        name = parse_label_only(operand_str)
        instr = Instruction(mnemonic, label=Label(name, relative=True))
    return [instr]


class Assembler:
    """COE Assembler."""

    def __init__(self, base: int = 0, strict_labels: bool = False):
        if not 0 <= base <= 0xFFFFFFFF:
            raise AssemblerError(f"base offset {base:#x} outside 0..0xffffffff")
        self.base = base  # Added to absolute label addresses
        self.strict_labels = strict_labels  # Error on label redefinition instead of overwriting
        self.labels: Dict[str, int] = {}  # label -> instruction index
        self.code: List[Instruction] = []
        self.line_num = 0
        self.current_line = ""

    def error(self, err: AssemblerError):
        """Raise an assembler error at the current line."""
        raise err.at(self.line_num, self.current_line)

    def define_label(self, name: str):
        if self.strict_labels and name in self.labels:
            self.error(DuplicateLabel(name))
        self.labels[name] = len(self.code)

    def assemble_line(self, line: str):
        """Assemble a single comment-free line."""
        label = detect_label(line)
        if label is not None:
            name, line = label
            self.define_label(name)
            if not line:
                return

        for instr in parse_instruction(line):
            instr.line_num = self.line_num
            instr.source = self.current_line
            self.code.append(instr)

    def label_address(self, name: str) -> int:
        """Byte address of a label, including the base offset."""
        return self.base + 4 * self.labels[name]

    def resolve_labels(self):
        """Assign addresses to every label reference."""
        for idx, instr in enumerate(self.code):
            if not (instr.has_abs_label or instr.has_rel_label):
                continue

            name = instr.label_name
            if name not in self.labels:
                raise UndefinedLabel(name).at(instr.line_num, instr.source)

            if instr.has_abs_label:
                instr.set_abs_addr(self.label_address(name))
            else:
                # Relative to PC + 4, in words
                next_pc = 4 * (idx + 1)
                diff = 4 * self.labels[name] - next_pc
                instr.set_rel_addr(diff >> 2)

    def encode(self) -> List[int]:
        """Encode every instruction, stopping at the first failure."""
        words = []
        for instr in self.code:
            try:
                words.append(instr.encode())
            except AssemblerError as e:
                raise e.at(instr.line_num, instr.source)
        return words

    def _assemble(self, lines: Iterable[Tuple[int, str]]) -> Image:
        self.labels = {}
        self.code = []

        for i, line in lines:
            self.line_num = i
            self.current_line = line
            try:
                self.assemble_line(line)
            except AssemblerError as e:
                self.error(e)

        self.resolve_labels()
        return Image(base=self.base, words=self.encode())

    def assemble_lines(self, lines: Iterable[str]) -> Image:
        """Assemble already comment-free lines; blank lines are errors."""
        return self._assemble(enumerate(lines, 1))

    def assemble(self, source: str) -> Image:
        """Assemble source code into an image."""
        lines = []
        for i, line in enumerate(source.split('\n'), 1):
            line = strip_comment(line)
            if line:
                lines.append((i, line))
        return self._assemble(lines)

    def listing(self) -> str:
        """Address, word and instruction for every assembled instruction."""
        rows = []
        for idx, instr in enumerate(self.code):
            addr = self.base + 4 * idx
            rows.append(f"0x{addr:08X}: {instr.encode():08X}  {instr}")
        return '\n'.join(rows)


def main():
    import argparse

    parser = argparse.ArgumentParser(description='COE Assembler')
    parser.add_argument('infile', help='Input assembly file')
    parser.add_argument('outfile', nargs='?', default=None, help='Output file')
    parser.add_argument('--format', '-f', choices=('coe', 'bin'), default='coe',
                        help='Output format: COE listing or compressed binary image')
    parser.add_argument('--base', '-b', type=lambda x: int(x, 0), default=0,
                        help='Base offset added to absolute label addresses')
    parser.add_argument('--strict-labels', action='store_true', help='Reject label redefinition')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose output')
    parser.add_argument('--dump-labels', action='store_true', help='Print label addresses after assembly')
    parser.add_argument('--listing', action='store_true', help='Print address, word and instruction listing')

    args = parser.parse_args()

    # Read source file
    try:
        with open(args.infile, 'r') as f:
            source = f.read()
    except OSError as e:
        print(f"Error: Cannot read {args.infile}: {e}", file=sys.stderr)
        sys.exit(1)

    # Assemble
    try:
        assembler = Assembler(base=args.base, strict_labels=args.strict_labels)
        image = assembler.assemble(source)
    except AssemblerError as e:
        print(f"Assembler error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.verbose:
        print(f"Assembled {len(image.words)} instructions")
        print(f"Base offset: 0x{image.base:08X}")
        print(f"Labels: {len(assembler.labels)}")

    if args.dump_labels:
        for name, idx in sorted(assembler.labels.items(), key=lambda kv: kv[1]):
            print(f"{name}: 0x{assembler.label_address(name):08X}")

    if args.listing:
        print(assembler.listing())

    if not args.outfile:
        args.outfile = args.infile.removesuffix('.asm') + '.' + args.format

    # Render fully before the output file is created
    if args.format == 'bin':
        data, mode = image.encode(), 'wb'
    else:
        data, mode = image.to_coe(), 'w'

    # Write output
    try:
        with open(args.outfile, mode) as f:
            f.write(data)
        if args.verbose:
            print(f"Output written to {args.outfile}")
    except OSError as e:
        print(f"Error writing output: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
