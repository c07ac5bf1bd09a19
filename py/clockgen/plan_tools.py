
from .plan_constants import Hz, MHz, kHz

from fractions import Fraction

def clamp(f: int, low: int, high: int) -> int:
    return min(max(f, low), high)

def trunc_div(a: int, b: int) -> int:
    '''Integer division rounding towards zero, rather than down.'''
    q = abs(a) // abs(b)
    return q if (a < 0) == (b < 0) else -q

def apply_correction(freq: int, correction: int) -> int:
    '''Adjust freq by correction, in units of 0.01ppm.

    Note that the frequency is truncated to whole MHz before scaling, so that
    the result matches the integer arithmetic used to measure the correction.
    E.g., if you measure 10_000_097 Hz when asking for 10 MHz, the correction
    is 970.'''
    corrected = freq - trunc_div(freq // MHz * correction, 100)
    if corrected <= 0:
        raise ValueError(
            f'Correction {correction} leaves no frequency to plan for {freq}')
    return corrected

def str_to_freq(s: str) -> int:
    s = s.lower()
    for suffix, scale in ('khz', kHz), ('mhz', MHz), ('ghz', 1000 * MHz), \
            ('hz', Hz):
        if s.endswith(suffix):
            break
        if suffix != 'hz' and s.endswith(suffix[0]):
            suffix = suffix[0]
            break
    else:
        suffix = ''
        scale = MHz

    return round(Fraction(s.removesuffix(suffix)) * scale)

# Set the name of str_to_freq to give sensible argparse help text.
str_to_freq.__name__ = 'frequency'

def freq_to_str(freq: Fraction | int, precision: int = 0) -> str:
    freq = Fraction(freq)
    if abs(freq) >= MHz:
        scaled = freq / MHz
        suffix = 'MHz'
    elif abs(freq) >= kHz:
        scaled = freq / kHz
        suffix = 'kHz'
    else:
        scaled = freq / Hz
        suffix = 'Hz'

    if scaled.denominator == 1:
        return f'{scaled.numerator} {suffix}'
    elif precision == 0:
        return f'{float(scaled)} {suffix}'
    else:
        return f'{float(scaled):.{precision}g} {suffix}'

def fraction_to_str(f: Fraction, paren: bool = True) -> str:
    if f.denominator == 1 or f < 1:
        return str(f)
    d = f.denominator
    i = f.numerator // d
    n = f.numerator % d
    if paren:
        return f'({i} + {n}/{d})'
    else:
        return f'{i} + {n}/{d}'

def test_correction() -> None:
    assert apply_correction(10_000_097, 970) == 10_000_000
    assert apply_correction(10_000_000, 0) == 10_000_000
    # Negative corrections round towards zero, like the firmware does.
    assert apply_correction(10_000_000, -970) == 10_000_097
    assert apply_correction(1_000_000, -150) == 1_000_001
    assert apply_correction(999_999, 12345) == 999_999
    try:
        apply_correction(1_000_000, 100_000_000)
        assert False
    except ValueError:
        pass

def test_trunc_div() -> None:
    assert trunc_div(7, 2) == 3
    assert trunc_div(-7, 2) == -3
    assert trunc_div(7, -2) == -3
    assert trunc_div(-7, -2) == 3

def test_str_to_freq() -> None:
    assert str_to_freq('10') == 10 * MHz
    assert str_to_freq('144MHz') == 144 * MHz
    assert str_to_freq('32.768k') == 32768
    assert str_to_freq('400khz') == 400 * kHz
    assert str_to_freq('1000Hz') == 1000
    assert str_to_freq('0.1G') == 100 * MHz
    assert str_to_freq('315/88') == 3579545
    try:
        str_to_freq('ten')
        assert False
    except ValueError:
        pass

def test_freq_to_str() -> None:
    assert freq_to_str(10 * MHz) == '10 MHz'
    assert freq_to_str(400 * kHz) == '400 kHz'
    assert freq_to_str(Fraction(3, 2)) == '1.5 Hz'
    assert freq_to_str(Fraction(-3, 2)) == '-1.5 Hz'
    assert freq_to_str(Fraction(10_000_001, 3), 4) == '3.333 MHz'

def test_fraction_to_str() -> None:
    assert fraction_to_str(Fraction(36)) == '36'
    assert fraction_to_str(Fraction(181, 2)) == '(90 + 1/2)'
    assert fraction_to_str(Fraction(181, 2), False) == '90 + 1/2'
