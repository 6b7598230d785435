"""
Instruction model for the COE assembler.

Word Format (32-bit, opcode always in bits 31-26):
  R-type:      opcode(6) | rs(5) | rt(5)    | 0(16)
  Shift:       opcode(6) | rs(5) | shamt(5) | 0(16)
  Immediate:   opcode(6) | rs(5) | rt(5)    | imm(16)
  Jump:        opcode(6) | addr(26)

Branches with a relative label use the immediate layout and store a signed
word displacement from PC + 4. Branches with an absolute label use the jump
layout and store the byte address of the target.

The opcode numbers below are fixed by the hardware that consumes the
listing. Do not renumber them.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

# Opcodes
OPCODES = {
    'add':   0,
    'comp':  1,
    'addi':  2,
    'compi': 3,
    'and':   4,
    'xor':   5,
    'sll':   6,
    'srl':   7,
    'sra':   8,
    'sllv':  9,
    'srlv':  10,
    'srav':  11,
    'lw':    12,
    'sw':    13,
    'b':     14,
    'br':    15,
    'bltz':  16,
    'bz':    17,
    'bnz':   18,
    'bl':    19,
    'bcy':   20,
    'bncy':  21,
}

OPCODE_NAMES = {v: k for k, v in OPCODES.items()}

# Operand shape of every mnemonic
#   reg      rs, rt
#   shift    rs, shamt
#   imm      rs, imm
#   mem      rt, imm(rs)
#   jr       rs
#   abs      label
#   rel_reg  rs, label
#   rel      label
FORMATS = {
    'add': 'reg', 'comp': 'reg', 'and': 'reg', 'xor': 'reg',
    'sllv': 'reg', 'srlv': 'reg', 'srav': 'reg',
    'sll': 'shift', 'srl': 'shift', 'sra': 'shift',
    'addi': 'imm', 'compi': 'imm',
    'lw': 'mem', 'sw': 'mem',
    'br': 'jr',
    'b': 'abs', 'bl': 'abs',
    'bltz': 'rel_reg', 'bz': 'rel_reg', 'bnz': 'rel_reg',
    'bcy': 'rel', 'bncy': 'rel',
}

# Register names
REGISTERS = {
    '$zero': 0, '$at': 1, '$v0': 2, '$v1': 3,
    '$a0': 4, '$a1': 5, '$a2': 6, '$a3': 7,
    '$t0': 8, '$t1': 9, '$t2': 10, '$t3': 11,
    '$t4': 12, '$t5': 13, '$t6': 14, '$t7': 15,
    '$s0': 16, '$s1': 17, '$s2': 18, '$s3': 19,
    '$s4': 20, '$s5': 21, '$s6': 22, '$s7': 23,
    '$t8': 24, '$t9': 25, '$k0': 26, '$k1': 27,
    '$gp': 28, '$sp': 29, '$fp': 30, '$ra': 31,
}

REG_NAMES = {v: k for k, v in REGISTERS.items()}

SP = REGISTERS['$sp']

ADDR_MASK = (1 << 26) - 1
IMM_MASK = 0xFFFF

LABEL_FORMATS = ('abs', 'rel', 'rel_reg')


class AssemblerError(Exception):
    """Assembler error with line information."""
    def __init__(self, message: str, line_num: int = 0, line: str = ""):
        self.message = message
        self.line_num = line_num
        self.line = line
        super().__init__(message)

    def at(self, line_num: int, line: str) -> 'AssemblerError':
        """Attach source position unless the error already has one."""
        if not self.line_num:
            self.line_num = line_num
            self.line = line
        return self

    def __str__(self) -> str:
        if self.line_num:
            return f"Line {self.line_num}: {self.message}\n  {self.line}"
        return self.message


class OpcodeMissing(AssemblerError):
    def __init__(self):
        super().__init__("opcode missing")


class UnknownInstruction(AssemblerError):
    def __init__(self, mnemonic: str):
        self.mnemonic = mnemonic
        super().__init__(f"unknown instruction `{mnemonic}`")


class InvalidArgCount(AssemblerError):
    def __init__(self, expected: int, found: int):
        self.expected = expected
        self.found = found
        super().__init__(f"invalid no. of args, expected `{expected}`, found `{found}`")


class UnknownRegister(AssemblerError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"unknown register `{name}`")


class InvalidNumber(AssemblerError):
    def __init__(self, text: str, radix: int = 10):
        self.text = text
        self.radix = radix
        super().__init__(f"failed to parse number `{text}` (radix {radix})")


class InvalidInstructionFormat(AssemblerError):
    def __init__(self, text: str):
        self.text = text
        super().__init__(f"invalid instruction format `{text}`")


class FloatingLabel(AssemblerError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"no address attached to label `{name}`")


class UndefinedLabel(AssemblerError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"undefined label `{name}`")


class DuplicateLabel(AssemblerError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"duplicate label `{name}`")


def lookup_register(name: str) -> int:
    """Return the 5-bit index of a register name such as `$sp`."""
    token = name.strip()
    if token in REGISTERS:
        return REGISTERS[token]
    raise UnknownRegister(token)


def to_signed16(value: int) -> int:
    value &= IMM_MASK
    return value - 0x10000 if value & 0x8000 else value


class LabelState(Enum):
    UNRESOLVED = 'unresolved'
    RESOLVED = 'resolved'


@dataclass
class Label:
    """A label reference; unresolved until the assembler assigns an address.

    Absolute labels hold a byte address, relative labels hold the 16-bit
    word displacement from the following instruction. `address` only means
    something once `state` is RESOLVED.
    """
    name: str
    relative: bool = False
    state: LabelState = LabelState.UNRESOLVED
    address: int = 0

    @classmethod
    def resolved_at(cls, name: str, address: int, relative: bool = False) -> 'Label':
        label = cls(name, relative=relative)
        label.resolve(address)
        return label

    @property
    def resolved(self) -> bool:
        return self.state is LabelState.RESOLVED

    def resolve(self, address: int):
        if self.resolved:
            raise ValueError(f"Label {self.name} already resolved")
        self.address = address & (IMM_MASK if self.relative else ADDR_MASK)
        self.state = LabelState.RESOLVED


@dataclass
class Instruction:
    """One primitive machine instruction.

    Only the fields used by the mnemonic's format are meaningful; the rest
    stay zero. `label` is set for exactly the branch forms that take one.
    """
    mnemonic: str
    rs: int = 0
    rt: int = 0
    imm: int = 0
    label: Optional[Label] = None
    source: str = ""  # Source line the instruction was assembled from
    line_num: int = 0

    def __post_init__(self):
        if self.mnemonic not in OPCODES:
            raise UnknownInstruction(self.mnemonic)
        if self.format in LABEL_FORMATS:
            if self.label is None:
                raise InvalidInstructionFormat(f"{self.mnemonic} without a label")
            if self.label.relative != (self.format != 'abs'):
                raise InvalidInstructionFormat(f"{self.mnemonic} with the wrong label kind")
        elif self.label is not None:
            raise InvalidInstructionFormat(f"{self.mnemonic} cannot take a label")

    @property
    def opcode(self) -> int:
        return OPCODES[self.mnemonic]

    @property
    def format(self) -> str:
        return FORMATS[self.mnemonic]

    @property
    def has_abs_label(self) -> bool:
        return self.format == 'abs'

    @property
    def has_rel_label(self) -> bool:
        return self.format in ('rel', 'rel_reg')

    @property
    def label_name(self) -> str:
        if self.label is None:
            raise ValueError(f"{self.mnemonic} does not carry a label")
        return self.label.name

    def set_abs_addr(self, address: int):
        if not self.has_abs_label:
            raise ValueError(f"{self.mnemonic} does not carry an absolute label")
        self.label.resolve(address)

    def set_rel_addr(self, displacement: int):
        if not self.has_rel_label:
            raise ValueError(f"{self.mnemonic} does not carry a relative label")
        self.label.resolve(displacement)

    def encode(self) -> int:
        """Encode instruction to a 32-bit word."""
        word = (self.opcode & 0x3F) << 26
        fmt = self.format

        if fmt == 'abs':
            return word | self._label_address()

        word |= (self.rs & 0x1F) << 21
        if fmt in ('reg', 'shift', 'mem'):
            word |= (self.rt & 0x1F) << 16
        if fmt in ('imm', 'mem'):
            word |= self.imm & IMM_MASK
        elif fmt in ('rel', 'rel_reg'):
            word |= self._label_address()
        return word

    def _label_address(self) -> int:
        if not self.label.resolved:
            raise FloatingLabel(self.label.name)
        return self.label.address

    @classmethod
    def decode(cls, word: int) -> 'Instruction':
        """Decode a 32-bit word. Labels come back resolved and named by address."""
        opcode = (word >> 26) & 0x3F
        if opcode not in OPCODE_NAMES:
            raise ValueError(f"Unknown opcode {opcode} in word 0x{word:08X}")

        mnemonic = OPCODE_NAMES[opcode]
        fmt = FORMATS[mnemonic]

        if fmt == 'abs':
            addr = word & ADDR_MASK
            return cls(mnemonic, label=Label.resolved_at(f"0x{addr:X}", addr))

        fields = {'rs': (word >> 21) & 0x1F}
        if fmt in ('reg', 'shift', 'mem'):
            fields['rt'] = (word >> 16) & 0x1F
        if fmt in ('imm', 'mem'):
            fields['imm'] = word & IMM_MASK
        elif fmt in ('rel', 'rel_reg'):
            disp = word & IMM_MASK
            fields['label'] = Label.resolved_at(f"{to_signed16(disp):+d}", disp, relative=True)
        return cls(mnemonic, **fields)

    def __str__(self) -> str:
        """Assembly text for the instruction."""
        fmt = self.format
        rs = REG_NAMES[self.rs & 0x1F]
        rt = REG_NAMES[self.rt & 0x1F]
        label = self.label.name if self.label else '?'

        if fmt == 'reg':
            return f"{self.mnemonic} {rs}, {rt}"
        if fmt == 'shift':
            return f"{self.mnemonic} {rs}, {self.rt}"
        if fmt == 'imm':
            return f"{self.mnemonic} {rs}, {to_signed16(self.imm)}"
        if fmt == 'mem':
            return f"{self.mnemonic} {rt}, {to_signed16(self.imm)}({rs})"
        if fmt == 'jr':
            return f"{self.mnemonic} {rs}"
        if fmt == 'rel_reg':
            return f"{self.mnemonic} {rs}, {label}"
        return f"{self.mnemonic} {label}"
