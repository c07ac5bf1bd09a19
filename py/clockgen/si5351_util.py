#!/usr/bin/python3

from .device import Device
from .plan_constants import XTAL_FREQ, MHz
from .plan_tools import freq_to_str, str_to_freq
from .si5351 import CHANNELS, CLK_CONTROL, CLK_INT, CLK_INV, CLK_PDN, \
    CLK_SRC_MS, CLK_SRC_PLLB, CRYSTAL_LOAD, CRYSTAL_LOADS, DIVBY4, \
    OUTPUT_ENABLE, PLL_BASES, PLL_INT_CONTROL, PLL_RESET, PLL_RESET_BITS, \
    Block, RegisterImage, encode, encode_bytes, register_get, register_name
from .si5351_plan import OutputParameters, PLLParameters, Plan, plan, \
    plan_quadrature, report_plan
from .transport import RecordingTransport, Transport, TransportFailure, check

import argparse
import sys

from enum import IntEnum
from fractions import Fraction
from typing import Any, Tuple

class PLL(IntEnum):
    A = 0
    B = 1

class Drive(IntEnum):
    MA2 = 0
    MA4 = 1
    MA6 = 2
    MA8 = 3

DRIVES = {'2': Drive.MA2, '4': Drive.MA4, '6': Drive.MA6, '8': Drive.MA8}

# Channels with a PLL of their own.
SETUP_PLLS = {0: PLL.A, 2: PLL.B}

class ProgrammingError(RuntimeError):
    pass

class InvalidChannel(ProgrammingError):
    pass

class InvalidDividerMode(ProgrammingError):
    pass

def str_to_drive(s: str) -> Drive:
    key = s.lower().removesuffix('ma')
    if key not in DRIVES:
        raise ValueError(f'Bad drive strength {s}')
    return DRIVES[key]
str_to_drive.__name__ = 'drive strength'

class Si5351:
    '''Program the chip via a transport.

    The write results are not checked here: a failed write leaves the chip
    partially configured, and it is up to whoever owns the transport to
    call check() afterwards.'''
    transport: Transport
    xtal: int
    correction: int

    def __init__(self, transport: Transport, xtal: int = XTAL_FREQ,
                 correction: int = 0):
        self.transport = transport
        self.xtal = xtal
        self.correction = correction

    def write(self, address: int, data: int) -> bool:
        return self.transport.write_register(address, data)

    def write_block(self, base: int, block: Block) -> None:
        for i, b in enumerate(block.to_bytes()):
            self.write(base + i, b)

    def check(self) -> None:
        check(self.transport)

    def initialize(self, correction: int = 0, load: int = 10) -> None:
        '''Disable and power down all outputs, and set the crystal load.
        correction, in units of 0.01ppm, applies to all later setups.'''
        self.correction = correction
        self.write(OUTPUT_ENABLE, 0xff)
        for i in range(8):
            self.write(CLK_CONTROL + i, CLK_PDN)
        self.write(CRYSTAL_LOAD, CRYSTAL_LOADS[load])

    def program_pll(self, pll: PLL, params: PLLParameters) -> None:
        # The feedback divider must be an even integer for integer mode.
        # This assumes that CLK6/7 are never used (and sets their power
        # down bits), and that spread spectrum is never used.
        if params.integer_mode and params.num == 0 \
           and params.multiplier % 2 == 0:
            self.write(PLL_INT_CONTROL[pll], CLK_PDN | CLK_INT)

        self.write_block(PLL_BASES[pll],
                         encode(params.multiplier, params.num, params.denom))

        # Reset both PLLs.
        self.write(PLL_RESET, PLL_RESET_BITS)

    def program_output(self, channel: int, pll: PLL, drive: Drive,
                       params: OutputParameters, phase_offset: int = 0) -> None:
        if not 0 <= channel < len(CHANNELS):
            raise InvalidChannel(f'Invalid channel {channel}')

        div = params.divider
        num = params.num
        if not params.integer_mode and (div < 8 or div == 8 and num == 0) \
           and not (div == 4 and num == 0):
            raise InvalidDividerMode(
                f'Multisynth divider {div} requires integer mode')

        # See AN619 4.1.3 for divide by 4.
        divby4 = DIVBY4 if div == 4 else 0
        block = encode(div, num, params.denom, divby4, params.rdiv)

        control = CLK_SRC_MS | drive
        if params.inverted:
            control |= CLK_INV
        if pll == PLL.B:
            control |= CLK_SRC_PLLB
        if params.integer_mode and (num == 0 or div == 4):
            control |= CLK_INT

        regs = CHANNELS[channel]
        self.write(regs.control, control)
        self.write_block(regs.block, block)
        self.write(regs.phase, phase_offset & 0x7f)

    def setup(self, channel: int, freq: int, drive: Drive) -> Plan:
        '''Set up channel 0 (using PLL A) or channel 2 (using PLL B).'''
        if channel not in SETUP_PLLS:
            raise InvalidChannel(
                f'Channel {channel} has no PLL of its own, use 0 or 2')
        pll = SETUP_PLLS[channel]
        p = plan(freq, self.correction, self.xtal)
        self.program_pll(pll, p.pll)
        self.program_output(channel, pll, drive, p.output, 0)
        return p

    def setup_quadrature(self, freq: int, drive: Drive) -> Plan:
        '''Set up channels 0 and 1, 90° apart, both using PLL A.'''
        p = plan_quadrature(freq, self.correction, self.xtal)
        self.program_pll(PLL.A, p.pll)
        self.program_output(0, PLL.A, drive, p.output, 0)
        self.program_output(1, PLL.A, drive, p.output, p.phase_offset())
        return p

    def enable_outputs(self, enabled: int) -> None:
        '''Enable the outputs in the bit mask, and disable all others.'''
        self.write(OUTPUT_ENABLE, ~enabled & 0xff)

def image_freqs(image: RegisterImage,
                xtal: int = XTAL_FREQ) -> dict[int, Fraction]:
    '''Work out the frequencies configured in a register image.'''
    result: dict[int, Fraction] = {}
    for ch, regs in enumerate(CHANNELS):
        if not image.written(regs.control):
            continue
        control = image.data[regs.control]
        if control & CLK_PDN:
            continue
        pll = PLL.B if control & CLK_SRC_PLLB else PLL.A
        pll_block = image.block(PLL_BASES[pll])
        ms_block = image.block(regs.block)
        if pll_block is None or ms_block is None:
            continue
        result[ch] = xtal * pll_block.ratio() / ms_block.ratio() \
            / (1 << ms_block.rdiv)
    return result

def report_image(image: RegisterImage, xtal: int = XTAL_FREQ,
                 verbose: bool = False) -> None:
    '''Describe a register image.  This is built from what we wrote; we never
    read the chip back.'''
    freqs = image_freqs(image, xtal)
    enables = image.data[OUTPUT_ENABLE] if image.written(OUTPUT_ENABLE) \
        else None
    for ch, regs in enumerate(CHANNELS):
        if not image.written(regs.control):
            continue
        control = image.data[regs.control]
        if control & CLK_PDN:
            print(f'CLK{ch}: Power down')
            continue
        pll = 'B' if control & CLK_SRC_PLLB else 'A'
        drive = 2 * (control & 3) + 2
        if ch not in freqs:
            print(f'CLK{ch}: PLL {pll}, not configured')
            continue
        state = ''
        if enables is not None:
            state = ', disabled' if enables & 1 << ch else ', enabled'
        phase = image.data[regs.phase] if image.written(regs.phase) else 0
        print(f'CLK{ch}: {freq_to_str(freqs[ch])} PLL {pll}, {drive}mA, '
              f'phase {phase}{state}')

    if verbose:
        print()
        for base, data in image.bundle(max_block = 8).items():
            print(f'{register_name(base):13} R{base:<3}:', data.hex(' '))

def add_to_argparse(argp: argparse.ArgumentParser,
                    dest: str = 'command', metavar: str = 'COMMAND') -> None:
    argp.add_argument('-c', '--correction', type=int, default=0,
                      help='Frequency correction, in units of 0.01ppm')
    argp.add_argument('-x', '--xtal', type=str_to_freq, default=XTAL_FREQ,
                      help='Crystal frequency, default 25MHz')
    argp.add_argument('-a', '--address', type=lambda s: int(s, 0),
                      help='I2C address of the clock chip, default 0x60')
    argp.add_argument('-s', '--serial', metavar='SN',
                      help='Serial number of the USB to I2C bridge')
    argp.add_argument('-n', '--dry-run', action='store_true',
                      help="Don't touch any hardware, just report")
    argp.add_argument('-v', '--verbose', action='store_true',
                      help='Report register writes')

    def register_key_value(s: str) -> Tuple[int, int]:
        if not '=' in s:
            raise ValueError('Key/value pairs must be in the form KEY=VALUE')
        K, V = s.split('=', 1)
        try:
            address = register_get(K)
        except KeyError:
            address = int(K, 0)
        return address, int(V, 0)
    register_key_value.__name__ = 'register key=value pair'

    subp = argp.add_subparsers(
        dest=dest, metavar=metavar, required=True, help='Sub-command')

    planp = subp.add_parser(
        'plan', help='Frequency planning',
        description='''Compute and print a frequency plan without programming
        it.''',
        epilog='''The frequency can be specified as either a fraction (315/88)
        or a decimal number (3.579545), with an optional unit that defaults to
        MHz.''')
    planp.add_argument('FREQ', type=str_to_freq, help='Frequency')
    planp.add_argument('-q', '--iq', action='store_true',
                       help='Plan for a quadrature pair')

    freq = subp.add_parser(
        'freq', aliases=['frequency'], help='Program a frequency',
        description='''Program CLK0 (using PLL A) or CLK2 (using PLL B).''')
    freq.add_argument('CHANNEL', type=int, choices=(0, 2), help='Channel')
    freq.add_argument('FREQ', type=str_to_freq, help='Frequency')

    iq = subp.add_parser(
        'iq', help='Program a quadrature pair',
        description='''Program CLK0 and CLK1 to the same frequency from PLL A,
        with CLK1 90° behind CLK0.''')
    iq.add_argument('FREQ', type=str_to_freq, help='Frequency')

    for p in freq, iq:
        p.add_argument('-d', '--drive', type=str_to_drive, default=Drive.MA8,
                       help='Drive strength, 2mA, 4mA, 6mA or 8mA')
        p.add_argument('-i', '--init', action='store_true',
                       help='Initialize the chip first')
        p.add_argument('-e', '--enable', action='store_true',
                       help='Enable the output(s) afterwards')

    init = subp.add_parser(
        'init', help='Initialize the chip',
        description='''Disable and power down all outputs, and set the crystal
        load capacitance.''')
    init.add_argument('-l', '--load', type=int, choices=sorted(CRYSTAL_LOADS),
                      default=10, help='Crystal load capacitance, pF')

    enable = subp.add_parser(
        'enable', help='Enable outputs',
        description='''Enable the listed channels, and disable all others.''')
    enable.add_argument('CHANNEL', type=int, nargs='*', choices=(0, 1, 2),
                        help='Channels to enable')

    valset = subp.add_parser(
        'set', help='Set registers', description='Set registers')
    valset.add_argument('KV', type=register_key_value, nargs='+',
                        metavar='KEY=VALUE', help='KEY=VALUE pairs')

def run_command(args: argparse.Namespace, device: Device, command: str) -> None:
    if command == 'plan':
        if args.iq:
            p = plan_quadrature(args.FREQ, args.correction, args.xtal)
        else:
            p = plan(args.FREQ, args.correction, args.xtal)
        report_plan(p, verbose=args.verbose)
        if args.iq:
            print(f'Phase offsets: 0, {p.phase_offset() & 0x7f}')
        return

    chip = Si5351(device.get_transport(), args.xtal, args.correction)

    if command in ('freq', 'frequency', 'iq'):
        if args.init:
            chip.initialize(args.correction)
        if command == 'iq':
            p = chip.setup_quadrature(args.FREQ, args.drive)
            mask = 3
        else:
            p = chip.setup(args.CHANNEL, args.FREQ, args.drive)
            mask = 1 << args.CHANNEL
        if args.enable:
            chip.enable_outputs(mask)
        report_plan(p, verbose=args.verbose)

    elif command == 'init':
        chip.initialize(args.correction, args.load)

    elif command == 'enable':
        mask = 0
        for ch in args.CHANNEL:
            mask |= 1 << ch
        chip.enable_outputs(mask)

    elif command == 'set':
        for address, value in args.KV:
            chip.write(address, value)

    else:
        print(args)
        assert False, f'This should never happen: {command}'

    transport = device.get_transport()
    if isinstance(transport, RecordingTransport):
        print()
        report_image(transport.image, args.xtal, args.verbose)
    chip.check()

def main(argv: list[str] | None = None) -> int:
    argp = argparse.ArgumentParser(description='Si5351 clock generator utility')
    add_to_argparse(argp)
    args = argp.parse_args(argv)
    try:
        run_command(args, Device(args), args.command)
    except (ProgrammingError, TransportFailure, ValueError) as e:
        print(f'{argp.prog}: {e}', file=sys.stderr)
        return 1
    return 0

def make_chip() -> Tuple[Si5351, RecordingTransport]:
    t = RecordingTransport()
    return Si5351(t), t

def test_program_pll_integer() -> None:
    chip, t = make_chip()
    chip.program_pll(PLL.A, PLLParameters(36, 0, 1, True))
    assert t.writes[0] == (22, 0xc0)
    assert [a for a, _ in t.writes[1:9]] == list(range(26, 34))
    assert bytes(d for _, d in t.writes[1:9]) == encode_bytes(36, 0, 1)
    assert t.writes[9:] == [(177, 0xa0)]

def test_program_pll_fractional() -> None:
    chip, t = make_chip()
    chip.program_pll(PLL.B, PLLParameters(34, 583333, 1041666, True))
    assert len(t.writes) == 9
    assert t.writes[0][0] == 34
    assert bytes(t.image.data[34:42]) == encode_bytes(34, 583333, 1041666)
    # Odd multiplier, or integer mode not allowed: no integer flag.
    for params in PLLParameters(35, 0, 1, True), PLLParameters(36, 0, 1):
        chip, t = make_chip()
        chip.program_pll(PLL.B, params)
        assert not t.image.written(23)

def test_program_output() -> None:
    chip, t = make_chip()
    chip.program_output(0, PLL.A, Drive.MA8,
                        OutputParameters(90, 0, 1000000, 0, True))
    assert t.writes[0] == (16, 0x4f)
    assert [a for a, _ in t.writes[1:9]] == list(range(42, 50))
    assert bytes(t.image.data[42:50]) == encode_bytes(90, 0, 1000000)
    assert t.writes[9:] == [(165, 0)]

def test_control_byte() -> None:
    chip, t = make_chip()
    chip.program_output(2, PLL.B, Drive.MA2,
                        OutputParameters(90, 1, 3, 0, True, inverted=True),
                        phase_offset=0xff)
    # Fractional, so no integer mode.
    assert t.writes[0] == (18, 0x0c | 0x10 | 0x20)
    assert t.writes[-1] == (167, 0x7f)

def test_divby4() -> None:
    chip, t = make_chip()
    chip.program_output(1, PLL.A, Drive.MA4,
                        OutputParameters(4, 5, 7, 0, True))
    assert t.image.data[17] == 0x0c | 1 | 0x40
    block = t.image.block(50)
    assert block == Block(0, 0, 1, DIVBY4, 0)

def test_invalid_channel() -> None:
    chip, t = make_chip()
    for ch in 3, 7, -1:
        try:
            chip.program_output(ch, PLL.A, Drive.MA8, OutputParameters(90))
            assert False
        except InvalidChannel:
            pass
    try:
        chip.setup(1, 10 * MHz, Drive.MA8)
        assert False
    except InvalidChannel:
        pass
    assert t.writes == []

def test_invalid_divider() -> None:
    chip, t = make_chip()
    for div, num, denom in (5, 0, 1), (6, 0, 1), (7, 1, 2), (8, 0, 1):
        try:
            chip.program_output(
                0, PLL.A, Drive.MA8, OutputParameters(div, num, denom))
            assert False
        except InvalidDividerMode:
            pass
    assert t.writes == []
    chip.program_output(0, PLL.A, Drive.MA8, OutputParameters(8, 1, 2))
    chip.program_output(0, PLL.A, Drive.MA8, OutputParameters(4, 0, 1))
    chip.program_output(0, PLL.A, Drive.MA8, OutputParameters(6, 0, 1, 0, True))
    assert len(t.writes) == 30

def test_initialize() -> None:
    chip, t = make_chip()
    chip.initialize(970)
    assert chip.correction == 970
    assert t.writes == [(3, 0xff)] + [(a, 0x80) for a in range(16, 24)] \
        + [(183, 0xc0)]
    p = chip.setup(0, 10_000_097, Drive.MA8)
    assert p.planned == 10 * MHz

def test_setup() -> None:
    chip, t = make_chip()
    p = chip.setup(2, 144 * MHz, Drive.MA4)
    # Fractional PLL, so no integer mode flag.
    assert t.writes[0][0] == 34
    assert t.image.data[18] == 0x0c | 1 | 0x20 | 0x40
    assert image_freqs(t.image) == {2: p.freq()}
    chip.setup(0, 10 * MHz, Drive.MA8)
    assert image_freqs(t.image) == {0: 10 * MHz, 2: p.freq()}

def test_setup_low() -> None:
    chip, t = make_chip()
    chip.setup(0, 400_000, Drive.MA8)
    assert t.image.block(42).rdiv == 6
    assert image_freqs(t.image) == {0: 400_000}

def test_setup_quadrature() -> None:
    chip, t = make_chip()
    p = chip.setup_quadrature(10 * MHz, Drive.MA8)
    assert t.image.data[165] == 0
    assert t.image.data[166] == 90
    # PLL A, no integer mode.
    assert t.image.data[16] == t.image.data[17] == 0x0c | 3
    assert not t.image.written(22)
    assert image_freqs(t.image) == {0: p.freq(), 1: p.freq()}
    assert abs(p.error()) <= 4

def test_correction_out_of_range() -> None:
    t = RecordingTransport()
    chip = Si5351(t, correction=100_000_000)
    try:
        chip.setup(0, 1 * MHz, Drive.MA8)
        assert False
    except ValueError:
        pass
    assert t.writes == []

def test_enable_outputs() -> None:
    chip, t = make_chip()
    chip.enable_outputs(1 << 0 | 1 << 2)
    assert t.writes == [(3, 0xfa)]

def test_best_effort() -> None:
    '''A failed write does not stop the sequence, check() reports it.'''
    t = RecordingTransport(fail=(26,))
    chip = Si5351(t)
    chip.setup(0, 10 * MHz, Drive.MA8)
    assert len(t.writes) == 1 + 8 + 1 + 1 + 8 + 1
    try:
        chip.check()
        assert False
    except TransportFailure:
        pass

def test_cli_dry_run(capsys: Any) -> None:
    assert main(['-n', 'freq', '0', '10M', '-e']) == 0
    out = capsys.readouterr().out
    assert 'Output: 10 MHz' in out
    assert 'CLK0: 10 MHz PLL A, 8mA, phase 0, enabled' in out

def test_cli_plan(capsys: Any) -> None:
    assert main(['plan', '144']) == 0
    out = capsys.readouterr().out
    assert 'Multisynth: 6' in out
    assert main(['plan', '--iq', '10M']) == 0
    out = capsys.readouterr().out
    assert 'Phase offsets: 0, 90' in out

def test_cli_errors(capsys: Any) -> None:
    for argv in ['-n', 'freq', '0', '10M', '-d', '3mA'], \
            ['-n', 'freq', '1', '10M'], ['plan', 'ten']:
        try:
            main(argv)
            assert False
        except SystemExit as e:
            assert e.code == 2
    capsys.readouterr()
    assert main(['-n', 'set', 'CLK0_CONTROL=0x4f', '200=1']) == 0
    out = capsys.readouterr().out
    assert 'CLK0:' in out
    assert main(['-n', '-c', '100000000', 'freq', '0', '1M']) == 1
    assert 'Correction' in capsys.readouterr().err

if __name__ == '__main__':
    sys.exit(main())
