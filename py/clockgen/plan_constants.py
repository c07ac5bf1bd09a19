
# All the frequencies are integers in Hz.  The chip arithmetic is integer
# arithmetic, and we reproduce it exactly.
Hz = 1
kHz = 1000 * Hz
MHz = 1000 * kHz

# The reference crystal.
XTAL_FREQ = 25 * MHz

# Range accepted by the standard planner.
FREQ_MIN = 8 * kHz
FREQ_MAX = 160 * MHz

# Below this we plan for 64 times the frequency, and use the R divider to
# bring it back down.
RDIV_BELOW = 1 * MHz
RDIV_SCALE = 6                          # Divide by 1<<6 = 64.

# Below this, run the PLL at exactly PLL_FIXED and use a fractional
# multisynth.  Above, the error of that exceeds 6Hz, so use an integer
# multisynth and a fractional PLL.
FIXED_PLL_BELOW = 81 * MHz
PLL_FIXED = 900 * MHz

# Integer multisynth thresholds for the high range.
DIV4_FROM = 150 * MHz
DIV6_FROM = 100 * MHz

# Quadrature range.
IQ_MIN = 1400 * kHz
IQ_MAX = 100 * MHz

# Under IQ_LOW the multisynth is fixed at IQ_LOW_DIV.  This takes the PLL
# below its 600MHz official minimum, but it is stable down to about 177MHz,
# and 177MHz / 127 is where IQ_MIN comes from.
IQ_LOW = 4900 * kHz
IQ_LOW_DIV = 127
# Between IQ_LOW and IQ_MID, target a 625MHz PLL.
IQ_MID = 8 * MHz
IQ_MID_PLL = 625 * MHz
IQ_DENOM_REDUCE = 24

# Denominators of either fraction must fit in 20 bits.
DENOM_BITS = 20
