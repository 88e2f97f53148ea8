"""Default numerical settings of the unfolding engine."""

# regularization scan: N points, log-spaced from STRENGTH_MIN to STRENGTH_MAX
# (upper bound exclusive), multiplied by the initial weight
N_SCAN_POINTS = 30
STRENGTH_MIN = 1e-5
STRENGTH_MAX = 1e5
INITIAL_WEIGHT = 1.0

# eigenvalues of G = M * M^T below this are treated as zero
EPS_LAMBDA = 1e-10

# Gauss-Newton iteration (Schmelling)
EPS_GAMMA = 1e-12
MAX_GAUSS_NEWTON_ITERATIONS = 1000

# bounded minimizer (Tikhonov, smoothing)
MAX_MINIMIZER_ITERATIONS = 100000
MINIMIZER_FTOL = 1e-14
MINIMIZER_GTOL = 1e-10
# a start point kept by L-BFGS-B with a projected gradient above
# MINIMIZER_STALL_GRADIENT * max(1, |f|) is not a minimum
MINIMIZER_STALL_GRADIENT = 1e-6
PENALTY_VALUE = 1e20
# bound of the Tikhonov log-ratio shape parameters ln(p_j / p_last)
PARAMETER_BOUND = 50.0

# response smoothing
SMOOTHING_MAX_RELATIVE_ERROR = 0.3
SMOOTHING_MIN_PROBABILITY = 1e-10
SMOOTHING_PARAMETER_NAMES = ("a0mean", "a1mean", "a2mean", "b0RMS", "b1RMS", "b2RMS")
SMOOTHING_B0_BOUNDS = (1e-20, 10.0)
# start values use only columns with mean +- SMOOTHING_CONTAINMENT * rms inside the matrix
SMOOTHING_CONTAINMENT = 2.5

# relative tolerance for the symmetry check of the input covariance
SYMMETRY_RTOL = 1e-10
COLUMN_SUM_TOLERANCE = 1e-9
