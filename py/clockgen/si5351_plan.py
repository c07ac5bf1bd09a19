
from .plan_constants import *
from .plan_tools import apply_correction, clamp, fraction_to_str, freq_to_str

from dataclasses import dataclass
from fractions import Fraction

__all__ = 'OutputParameters', 'PLLParameters', 'Plan', 'fixed_pll', 'plan', \
    'plan_quadrature', 'report_plan'

@dataclass
class PLLParameters:
    '''PLL frequency is xtal * (multiplier + num / denom).'''
    multiplier: int
    num: int = 0
    denom: int = 1
    integer_mode: bool = False

    def ratio(self) -> Fraction:
        return self.multiplier + Fraction(self.num, self.denom)

@dataclass
class OutputParameters:
    '''Output frequency is PLL / (divider + num / denom) / (1 << rdiv).'''
    divider: int
    num: int = 0
    denom: int = 1
    rdiv: int = 0
    integer_mode: bool = False
    inverted: bool = False

    def ratio(self) -> Fraction:
        return self.multisynth() * (1 << self.rdiv)

    def multisynth(self) -> Fraction:
        return self.divider + Fraction(self.num, self.denom)

@dataclass
class Plan:
    # Requested output frequency, after clamping to the supported range.
    target: int
    pll: PLLParameters
    output: OutputParameters
    # The multisynth frequency actually planned for, after R divider scaling
    # and correction.
    planned: int = 0
    xtal: int = XTAL_FREQ
    correction: int = 0

    def pll_freq(self) -> Fraction:
        return self.xtal * self.pll.ratio()

    def freq(self) -> Fraction:
        '''Output frequency, assuming the crystal is exactly xtal.'''
        return self.pll_freq() / self.output.ratio()

    def error(self) -> Fraction:
        return self.freq() - self.target

    def phase_offset(self) -> int:
        '''Phase offset for the second channel of a quadrature pair.'''
        return self.output.divider

def fixed_pll(xtal: int) -> PLLParameters:
    '''PLL settings for PLL_FIXED.  This is exact (36 + 0/1) for a 25 MHz
    crystal, and for any crystal that is a round number of kHz.'''
    ratio = Fraction(PLL_FIXED, xtal).limit_denominator((1 << DENOM_BITS) - 1)
    return PLLParameters(ratio.numerator // ratio.denominator,
                         ratio.numerator % ratio.denominator,
                         ratio.denominator, True)

def plan(freq: int, correction: int = 0, xtal: int = XTAL_FREQ) -> Plan:
    '''Calculate PLL, multisynth and R divider settings for freq.

    freq is clamped to [8 kHz, 160 MHz].  For correction == 0, the result is
    within 6 Hz of freq for any freq in [500 kHz, 112.5 MHz], except just
    below 81 MHz, where the fixed PLL gives up to 6.81 Hz.'''
    freq = clamp(freq, FREQ_MIN, FREQ_MAX)
    target = freq

    if freq < RDIV_BELOW:
        # Plan for 64 × freq and use the R divider: this is needed below 500
        # kHz, and reduces the error anywhere below 1 MHz.
        freq *= 1 << RDIV_SCALE
        rdiv = RDIV_SCALE
    else:
        rdiv = 0

    # Correction comes after determining the R divider.
    freq = apply_correction(freq, correction)

    # We are looking for PLL = a + b/c, MS = x + y/z, such that:
    # freq = xtal * (a + b/c) / (x + y/z), with
    # a in [24, 36], x in [8, 1800] or x in {4, 6},
    # b < c, y < z, b, c, y, z <= 1<<20.
    if freq < FIXED_PLL_BELOW:
        pll = fixed_pll(xtal)
        t = (freq >> DENOM_BITS) + 1
        out = OutputParameters(
            PLL_FIXED // freq, PLL_FIXED % freq // t, freq // t, rdiv, True)
    else:
        if freq >= DIV4_FROM:
            divider = 4
        elif freq >= DIV6_FROM:
            divider = 6
        else:
            divider = 8
        numerator = divider * freq
        t = (xtal >> DENOM_BITS) + 1
        pll = PLLParameters(
            numerator // xtal, numerator % xtal // t, xtal // t, True)
        out = OutputParameters(divider, 0, 1, rdiv, True)

    return Plan(target, pll, out, freq, xtal, correction)

def plan_quadrature(freq: int, correction: int = 0,
                    xtal: int = XTAL_FREQ) -> Plan:
    '''Calculate settings giving two outputs 90° apart.

    Both channels must use the same PLL, with phase offsets of 0 and
    Plan.phase_offset().  freq is clamped to [1.4 MHz, 100 MHz], and for
    correction == 0 the result is within 4 Hz of freq.'''
    freq = clamp(freq, IQ_MIN, IQ_MAX)
    target = freq
    freq = apply_correction(freq, correction)

    # R dividers change the phase shift, with no documented guarantees, so
    # we never use them.  Integer mode is disabled.
    if freq < IQ_LOW:
        divider = IQ_LOW_DIV
    elif freq < IQ_MID:
        divider = IQ_MID_PLL // freq
    else:
        divider = PLL_FIXED // freq
    out = OutputParameters(divider, 0, 1, 0, False)

    pll_freq = freq * divider
    # xtal / 24 keeps the denominator below 1<<20.
    pll = PLLParameters(pll_freq // xtal, pll_freq % xtal // IQ_DENOM_REDUCE,
                        xtal // IQ_DENOM_REDUCE, False)

    return Plan(target, pll, out, freq, xtal, correction)

def report_plan(plan: Plan, verbose: bool = False) -> None:
    f = plan.freq()
    print(f'Output: {freq_to_str(f)}', end='')
    if f != plan.target:
        print(f' error {freq_to_str(plan.error(), 4)}', end='')
    print()
    pll, out = plan.pll, plan.output
    print(f'PLL: {freq_to_str(plan.pll_freq())} = {freq_to_str(plan.xtal)} '
          f'* {fraction_to_str(pll.ratio())}')
    rdiv = f' / {1 << out.rdiv}' if out.rdiv else ''
    print(f'Multisynth: {fraction_to_str(out.multisynth())}{rdiv}')
    if plan.correction:
        print(f'Planned for {freq_to_str(plan.planned)} '
              f'(correction {plan.correction / 100} ppm)')
    if verbose:
        print(f'PLL a={pll.multiplier} b={pll.num} c={pll.denom}'
              f'{" integer" if pll.integer_mode else ""}')
        print(f'MS  x={out.divider} y={out.num} z={out.denom} r={out.rdiv}'
              f'{" integer" if out.integer_mode else ""}')

def test_scenario_a() -> None:
    p = plan(10 * MHz)
    assert p.pll == PLLParameters(36, 0, 1, True)
    assert p.output == OutputParameters(90, 0, 1000000, 0, True)
    assert p.freq() == 10 * MHz

def test_scenario_b() -> None:
    p = plan(144 * MHz)
    assert p.pll == PLLParameters(34, 583333, 1041666, True)
    assert p.output == OutputParameters(6, 0, 1, 0, True)
    assert abs(p.error()) <= 6

def test_scenario_c() -> None:
    p = plan(400 * kHz)
    assert p.planned == 25_600_000
    assert p.output.rdiv == 6
    assert p.output.divider == 35
    assert p.output.ratio() == Fraction(9000, 256) * 64
    assert p.freq() == 400 * kHz

def test_scenario_d() -> None:
    p = plan(10_000_097, correction=970)
    assert p.planned == 10 * MHz
    assert p.output == OutputParameters(90, 0, 1000000, 0, True)

def test_other_xtal() -> None:
    assert fixed_pll(27 * MHz) == PLLParameters(33, 1, 3, True)
    p = plan(10 * MHz, xtal=27 * MHz)
    assert p.pll_freq() == PLL_FIXED
    assert p.freq() == 10 * MHz

def test_clamp() -> None:
    assert plan(1).target == 8 * kHz
    assert plan(1).output.rdiv == 6
    assert plan(200 * MHz).target == 160 * MHz
    assert plan(200 * MHz).output.divider == 4
    assert plan_quadrature(1).target == 1400 * kHz
    assert plan_quadrature(200 * MHz).target == 100 * MHz

def test_high_dividers() -> None:
    assert plan(150 * MHz).output.divider == 4
    assert plan(149_999_999).output.divider == 6
    assert plan(100 * MHz).output.divider == 6
    assert plan(99_999_999).output.divider == 8
    assert plan(81 * MHz).output.divider == 8
    assert plan(80_999_999).pll == PLLParameters(36, 0, 1, True)

def test_standard_error() -> None:
    for f in range(500 * kHz, 74 * MHz, 36_919):
        p = plan(f)
        assert abs(p.error()) <= 6, f
        assert p.output.denom <= 1 << DENOM_BITS
    # Approaching 81 MHz the fixed PLL is not quite as good: the error is
    # bounded by (freq >> 20) * freq / PLL_FIXED, which passes 6 Hz around
    # 75.5 MHz and peaks at 6.81 Hz just below 81 MHz.
    worst = Fraction(0)
    for f in list(range(74 * MHz, 81 * MHz, 997)) + [80_966_039]:
        e = abs(plan(f).error())
        assert e < 7, f
        worst = max(worst, e)
    assert worst > 6
    for f in range(81 * MHz, 112_500_001, 17_011):
        p = plan(f)
        assert abs(p.error()) <= 6, f
        assert 24 <= p.pll.multiplier <= 36
        assert p.pll.denom <= 1 << DENOM_BITS

def test_quadrature() -> None:
    p = plan_quadrature(10 * MHz)
    assert p.output == OutputParameters(90, 0, 1, 0, False)
    assert p.pll == PLLParameters(36, 0, 1041666, False)
    assert p.phase_offset() == 90
    assert plan_quadrature(2 * MHz).output.divider == 127
    assert plan_quadrature(5 * MHz).output.divider == 125

def test_quadrature_error() -> None:
    for f in range(1400 * kHz, 100 * MHz + 1, 49_999):
        p = plan_quadrature(f)
        assert abs(p.error()) <= 4, f
        assert p.output.rdiv == 0
        assert p.output.num == 0
    assert abs(plan_quadrature(100 * MHz).error()) <= 4
