import unittest

from instruction import (
    Instruction, InvalidInstructionFormat, Label, LabelState, OPCODES, REGISTERS, FORMATS,
    FloatingLabel, UnknownInstruction, UnknownRegister, lookup_register, to_signed16,
)


def sample(mnemonic):
    """An instruction of the given mnemonic with every label already resolved."""
    fmt = FORMATS[mnemonic]
    if fmt == 'abs':
        return Instruction(mnemonic, label=Label.resolved_at('L', 0x40))
    if fmt in ('rel', 'rel_reg'):
        return Instruction(mnemonic, rs=3, label=Label.resolved_at('L', 0x7, relative=True))
    return Instruction(mnemonic, rs=3, rt=4, imm=0x1234)


class RegisterTableTests(unittest.TestCase):
    def test_known_registers(self):
        self.assertEqual(0, lookup_register('$zero'))
        self.assertEqual(10, lookup_register('$t2'))
        self.assertEqual(23, lookup_register('$s7'))
        self.assertEqual(29, lookup_register('$sp'))
        self.assertEqual(31, lookup_register('$ra'))

    def test_surrounding_whitespace(self):
        self.assertEqual(15, lookup_register('  $t7 '))

    def test_table_is_a_bijection(self):
        self.assertEqual(32, len(REGISTERS))
        self.assertEqual(set(range(32)), set(REGISTERS.values()))

    def test_unknown_register(self):
        with self.assertRaises(UnknownRegister) as cm:
            lookup_register('$t10')
        self.assertEqual('$t10', cm.exception.name)
        self.assertIn('unknown register `$t10`', str(cm.exception))

    def test_name_without_dollar(self):
        with self.assertRaises(UnknownRegister):
            lookup_register('t0')


class EncodeTests(unittest.TestCase):
    def test_register_form(self):
        self.assertEqual(0x11570000, Instruction('and', rs=10, rt=23).encode())

    def test_immediate_form(self):
        self.assertEqual(0x09400291, Instruction('addi', rs=10, imm=657).encode())

    def test_memory_form(self):
        self.assertEqual(0x314F0291, Instruction('lw', rs=10, rt=15, imm=657).encode())

    def test_shift_amount_in_rt_field(self):
        self.assertEqual(0x19030000, Instruction('sll', rs=8, rt=3).encode())

    def test_register_jump(self):
        self.assertEqual(0x3FE00000, Instruction('br', rs=31).encode())

    def test_absolute_label(self):
        instr = Instruction('b', label=Label('L0'))
        instr.set_abs_addr(0xA7FFF)
        self.assertEqual(0x380A7FFF, instr.encode())

    def test_absolute_label_masked_to_26_bits(self):
        instr = Instruction('bl', label=Label('far'))
        instr.set_abs_addr(0xFC000010)
        self.assertEqual((19 << 26) | 0x10, instr.encode())

    def test_relative_label(self):
        instr = Instruction('bz', rs=8, label=Label('back', relative=True))
        instr.set_rel_addr(-2)
        self.assertEqual(0x4500FFFE, instr.encode())

    def test_every_opcode_lands_in_top_bits(self):
        for mnemonic, opcode in OPCODES.items():
            with self.subTest(mnemonic=mnemonic):
                self.assertEqual(opcode, sample(mnemonic).encode() >> 26)

    def test_opcodes_are_dense(self):
        self.assertEqual(set(range(22)), set(OPCODES.values()))

    def test_register_pairs_do_not_collide(self):
        seen = {}
        for mnemonic in ('add', 'comp', 'and', 'xor', 'sllv', 'srlv', 'srav'):
            for rs in (0, 1, 17, 31):
                for rt in (0, 2, 30, 31):
                    word = Instruction(mnemonic, rs=rs, rt=rt).encode()
                    self.assertNotIn(word, seen)
                    seen[word] = (mnemonic, rs, rt)

    def test_floating_absolute_label(self):
        with self.assertRaises(FloatingLabel) as cm:
            Instruction('b', label=Label('L0')).encode()
        self.assertEqual('L0', cm.exception.name)

    def test_floating_relative_label(self):
        with self.assertRaises(FloatingLabel):
            Instruction('bcy', label=Label('skip', relative=True)).encode()

    def test_unknown_mnemonic(self):
        with self.assertRaises(UnknownInstruction):
            Instruction('mul')

    def test_label_form_without_label(self):
        for mnemonic in ('b', 'bl', 'bz', 'bcy'):
            with self.subTest(mnemonic=mnemonic):
                with self.assertRaises(InvalidInstructionFormat):
                    Instruction(mnemonic)

    def test_label_on_plain_form(self):
        with self.assertRaises(InvalidInstructionFormat):
            Instruction('add', rs=1, rt=2, label=Label('x'))

    def test_wrong_label_kind(self):
        with self.assertRaises(InvalidInstructionFormat):
            Instruction('b', label=Label('x', relative=True))
        with self.assertRaises(InvalidInstructionFormat):
            Instruction('bnz', rs=1, label=Label('x'))


class LabelTests(unittest.TestCase):
    def test_starts_unresolved(self):
        label = Label('x')
        self.assertFalse(label.resolved)
        self.assertIs(LabelState.UNRESOLVED, label.state)

    def test_relative_truncated_to_16_bits(self):
        label = Label('x', relative=True)
        label.resolve(-1)
        self.assertTrue(label.resolved)
        self.assertIs(LabelState.RESOLVED, label.state)
        self.assertEqual(0xFFFF, label.address)

    def test_resolved_at_zero(self):
        label = Label.resolved_at('start', 0)
        self.assertTrue(label.resolved)
        self.assertEqual(0, label.address)

    def test_resolved_once(self):
        label = Label('x')
        label.resolve(8)
        with self.assertRaises(ValueError):
            label.resolve(12)

    def test_label_accessors(self):
        instr = Instruction('bnz', rs=1, label=Label('top', relative=True))
        self.assertTrue(instr.has_rel_label)
        self.assertFalse(instr.has_abs_label)
        self.assertEqual('top', instr.label_name)
        with self.assertRaises(ValueError):
            instr.set_abs_addr(0)

    def test_no_label(self):
        instr = Instruction('add', rs=1, rt=2)
        self.assertFalse(instr.has_abs_label or instr.has_rel_label)
        with self.assertRaises(ValueError):
            instr.label_name


class DecodeTests(unittest.TestCase):
    def test_memory(self):
        instr = Instruction.decode(0x314F0291)
        self.assertEqual('lw', instr.mnemonic)
        self.assertEqual((10, 15, 657), (instr.rs, instr.rt, instr.imm))
        self.assertEqual('lw $t7, 657($t2)', str(instr))

    def test_register(self):
        self.assertEqual('and $t2, $s7', str(Instruction.decode(0x11570000)))

    def test_negative_immediate(self):
        self.assertEqual('addi $sp, -4', str(Instruction.decode(0x0BA0FFFC)))

    def test_relative_branch(self):
        self.assertEqual('bz $t0, -2', str(Instruction.decode(0x4500FFFE)))

    def test_absolute_jump(self):
        instr = Instruction.decode(0x380A7FFF)
        self.assertEqual('b', instr.mnemonic)
        self.assertEqual(0xA7FFF, instr.label.address)
        self.assertEqual(0x380A7FFF, instr.encode())

    def test_reencode_every_opcode(self):
        for mnemonic in OPCODES:
            with self.subTest(mnemonic=mnemonic):
                word = sample(mnemonic).encode()
                self.assertEqual(word, Instruction.decode(word).encode())

    def test_unknown_opcode(self):
        with self.assertRaises(ValueError):
            Instruction.decode(0xFC000000)

    def test_to_signed16(self):
        self.assertEqual(-16, to_signed16(0xFFF0))
        self.assertEqual(0x7FFF, to_signed16(0x7FFF))
        self.assertEqual(-0x8000, to_signed16(0x8000))


if __name__ == '__main__':
    unittest.main()
