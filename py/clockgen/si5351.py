
from __future__ import annotations

import difflib

from dataclasses import dataclass
from fractions import Fraction
from typing import Callable, Tuple

# Register addresses.  These must match the chip.
OUTPUT_ENABLE = 3
CLK_CONTROL = 16                        # CLK0..7 control are 16..23.
PLL_A_BASE = 26
PLL_B_BASE = 34
MULTISYNTH_BASE = 42                    # MS0..2 blocks are 42, 50, 58.
PHASE_OFFSET = 165                      # CLK0..2 phase are 165..167.
PLL_RESET = 177
CRYSTAL_LOAD = 183

BLOCK_SIZE = 8

# Channels 6 and 7 are never driven, so their control registers double as the
# FBA_INT / FBB_INT integer mode flags for PLL A / PLL B.
PLL_INT_CONTROL = CLK_CONTROL + 6, CLK_CONTROL + 7

# CLKx control bits.
CLK_PDN = 1 << 7
CLK_INT = 1 << 6
CLK_SRC_PLLB = 1 << 5
CLK_INV = 1 << 4
CLK_SRC_MS = 3 << 2                     # Multisynth as the output source.

PLL_RESET_BITS = 1 << 7 | 1 << 5

DIVBY4 = 3

CRYSTAL_LOADS = {6: 1 << 6, 8: 2 << 6, 10: 3 << 6}

P1_BITS = 18
P2_BITS = 20
P3_BITS = 20

@dataclass(frozen=True)
class ChannelRegisters:
    control: int
    block: int
    phase: int

CHANNELS = tuple(
    ChannelRegisters(CLK_CONTROL + i, MULTISYNTH_BASE + BLOCK_SIZE * i,
                     PHASE_OFFSET + i) for i in range(3))

PLL_BASES = PLL_A_BASE, PLL_B_BASE

def _names() -> dict[str, int]:
    names = {'OUTPUT_ENABLE': OUTPUT_ENABLE, 'PLL_RESET': PLL_RESET,
             'CRYSTAL_LOAD': CRYSTAL_LOAD}
    for i in range(8):
        names[f'CLK{i}_CONTROL'] = CLK_CONTROL + i
    for tag, base in ('PLLA', PLL_A_BASE), ('PLLB', PLL_B_BASE):
        for i in range(BLOCK_SIZE):
            names[f'{tag}_{i + 1}'] = base + i
    for ch, regs in enumerate(CHANNELS):
        for i in range(BLOCK_SIZE):
            names[f'MS{ch}_{i + 1}'] = regs.block + i
        names[f'CLK{ch}_PHASE'] = regs.phase
    return names

# Register names, as used for reporting and the set command.
REGISTERS = _names()

NAME_BY_ADDRESS = {a: n for n, a in REGISTERS.items()}

def register_get(key: str) -> int:
    key = key.upper().replace('-', '_')
    try:
        return REGISTERS[key]
    except KeyError:
        prompt = ' '.join(difflib.get_close_matches(key, REGISTERS))
        if prompt:
            print(f'Did you mean: {prompt}?')
        raise

def register_name(address: int) -> str:
    return NAME_BY_ADDRESS.get(address, f'R{address}')

@dataclass
class Block:
    '''The three packed parameters of a PLL or multisynth, plus the two
    extra fields that share the parameter block.'''
    p1: int
    p2: int
    p3: int
    divby4: int = 0
    rdiv: int = 0

    def ratio(self) -> Fraction:
        '''The divide (or multiply) ratio encoded.'''
        if self.divby4 == DIVBY4:
            return Fraction(4)
        return (self.p1 + 512 + Fraction(self.p2, self.p3)) / 128

    def to_bytes(self) -> bytes:
        p1, p2, p3 = self.p1, self.p2, self.p3
        return bytes((
            p3 >> 8 & 0xff,
            p3 & 0xff,
            p1 >> 16 & 3 | (self.divby4 & 3) << 2 | (self.rdiv & 7) << 4,
            p1 >> 8 & 0xff,
            p1 & 0xff,
            p3 >> 12 & 0xf0 | p2 >> 16 & 0xf,
            p2 >> 8 & 0xff,
            p2 & 0xff))

def encode(integer: int, num: int, denom: int,
           divby4: int = 0, rdiv: int = 0) -> Block:
    '''Convert integer + num/denom into the chip's P1/P2/P3 form.

    With the divide-by-4 flag set, the parameters are fixed at P1=0, P2=0,
    P3=1 whatever the requested ratio.'''
    if divby4:
        return Block(0, 0, 1, divby4, rdiv)
    p1 = 128 * integer + 128 * num // denom - 512
    p2 = 128 * num % denom
    return Block(p1, p2, denom, divby4, rdiv)

def encode_bytes(integer: int, num: int, denom: int,
                 divby4: int = 0, rdiv: int = 0) -> bytes:
    return encode(integer, num, denom, divby4, rdiv).to_bytes()

def decode_block(b: bytes | bytearray) -> Block:
    assert len(b) == BLOCK_SIZE
    p3 = (b[5] & 0xf0) << 12 | b[0] << 8 | b[1]
    p1 = (b[2] & 3) << 16 | b[3] << 8 | b[4]
    p2 = (b[5] & 0xf) << 16 | b[6] << 8 | b[7]
    return Block(p1, p2, p3, b[2] >> 2 & 3, b[2] >> 4 & 7)

IMAGE_SIZE = 256

class RegisterImage:
    '''A picture of the chip registers: data for each address, plus a mask of
    which addresses have been written.'''
    data: bytearray
    mask: bytearray
    def __init__(self):
        self.data = bytearray(IMAGE_SIZE)
        self.mask = bytearray(IMAGE_SIZE)

    def insert(self, address: int, value: int) -> None:
        self.data[address] = value & 0xff
        self.mask[address] = 0xff

    def written(self, address: int, span: int = 1) -> bool:
        return all(self.mask[address : address + span])

    def block(self, base: int) -> Block | None:
        if not self.written(base, BLOCK_SIZE):
            return None
        return decode_block(self.data[base : base + BLOCK_SIZE])

    def ranges(self, select: Callable[[int], bool] = lambda m: m != 0,
               max_block: int = 1000) -> list[Tuple[int, int]]:
        '''Return a list of (start, count) of indexes with non-zero mask.'''
        result: list[Tuple[int, int]] = []
        addr = None
        span = 0
        for i, m in enumerate(self.mask):
            if not select(m):
                continue
            if addr is not None and addr + span == i and span < max_block:
                span += 1
                continue
            if addr is not None:
                result.append((addr, span))
            addr = i
            span = 1
        if addr is not None:
            result.append((addr, span))
        return result

    def bundle(self, max_block: int = 1000) -> dict[int, bytearray]:
        return {start: self.data[start : start + span]
                for start, span in self.ranges(max_block = max_block)}

def test_scenario_a_bytes() -> None:
    # 10MHz: multisynth 90 + 0/1000000.
    b = encode(90, 0, 1000000)
    assert (b.p1, b.p2, b.p3) == (128 * 90 - 512, 0, 1000000)
    assert encode_bytes(90, 0, 1000000) == bytes(
        (0x42, 0x40, 0x00, 0x2b, 0x00, 0xf0, 0x00, 0x00))

def test_pll_bytes() -> None:
    # 144MHz plan: PLL 34 + 583333/1041666.
    b = encode(34, 583333, 1041666)
    assert b.p1 == 128 * 34 + 71 - 512
    assert b.p2 == 128 * 583333 % 1041666
    assert b.p3 == 1041666
    raw = b.to_bytes()
    assert raw[0] == 1041666 >> 8 & 0xff
    assert raw[1] == 1041666 & 0xff
    assert raw[5] >> 4 == 1041666 >> 16
    assert decode_block(raw) == b

def test_divby4() -> None:
    for num, denom in (0, 1), (5, 7), (1000, 1048575):
        b = encode(4, num, denom, DIVBY4)
        assert (b.p1, b.p2, b.p3, b.divby4) == (0, 0, 1, DIVBY4)
        assert b.ratio() == 4
    assert encode_bytes(4, 0, 1, DIVBY4, 0)[2] == 0x0c

def test_rdiv_field() -> None:
    raw = encode_bytes(100, 0, 1, 0, 6)
    assert raw[2] >> 4 == 6
    assert decode_block(raw).rdiv == 6

def test_round_trip() -> None:
    '''Every field at its extremes, plus some bit patterns in between.'''
    values = [
        Block(0, 0, 0), Block((1 << P1_BITS) - 1, (1 << P2_BITS) - 1,
                              (1 << P3_BITS) - 1, 3, 7),
        Block(0x2aaaa, 0x55555, 0xaaaaa, 1, 5),
        Block(0x15555, 0xaaaaa, 0x55555, 2, 2)]
    for b in values:
        assert decode_block(b.to_bytes()) == b

def test_ratio() -> None:
    for integer, num, denom in (36, 0, 1), (90, 0, 1000000), \
            (34, 583333, 1041666), (899, 1, 3), (1799, 1048574, 1048575):
        b = encode(integer, num, denom)
        assert b.ratio() == integer + Fraction(num, denom)

def test_channel_registers() -> None:
    assert CHANNELS[0] == ChannelRegisters(16, 42, 165)
    assert CHANNELS[1] == ChannelRegisters(17, 50, 166)
    assert CHANNELS[2] == ChannelRegisters(18, 58, 167)
    assert PLL_INT_CONTROL == (22, 23)
    assert register_get('clk2-phase') == 167
    assert register_name(34) == 'PLLB_1'

def test_image_ranges() -> None:
    image = RegisterImage()
    for a in range(42, 50):
        image.insert(a, a)
    image.insert(16, 0x4f)
    image.insert(165, 0)
    assert image.ranges() == [(16, 1), (42, 8), (165, 1)]
    assert image.bundle(max_block = 4) == {
        16: bytearray((0x4f,)), 42: bytearray(range(42, 46)),
        46: bytearray(range(46, 50)), 165: bytearray(1)}
    assert image.block(42) is not None
    assert image.block(50) is None
