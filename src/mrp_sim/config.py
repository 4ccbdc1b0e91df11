"""Default parameters for the MRP survey simulation."""

N_AGE = 5
N_INCOME = 5
N_STATES = 50

SAMPLE_SIZE = 1200
RANDOM_SEED = 42

# True fixed effects (logit scale); state income enters standardized
TRUE_INTERCEPT = -0.3
TRUE_BETA_STATE_INCOME = 0.4

# True scales of the group-level effects
TRUE_SIGMA_AGE = 0.6
TRUE_SIGMA_INCOME = 0.4
TRUE_SIGMA_STATE = 0.5

STATE_INCOME_RANGE = (40.0, 90.0)  # thousands of USD
STATE_POPULATION_RANGE = (500_000, 20_000_000)
DIRICHLET_CONCENTRATION = 8.0  # age/income shares within a state

# Log-odds of responding rises by this much per age group (older answer more)
RESPONSE_BIAS = 0.35
