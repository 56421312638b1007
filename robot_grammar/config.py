import os
from pathlib import Path

VERBOSE = bool(os.environ.get("ROBOT_GRAMMAR_VERBOSE"))  # log skipped rules, dropped edges

# --- SIMULATION --- #
TIME_STEP = 1.0 / 240  # physics step (s)
INTERVAL = 4  # physics steps per control decision
GRAVITY = [0.0, 0.0, -9.81]

FLOOR_HALF_EXTENTS = [10.0, 10.0, 1.0]
FLOOR_FRICTION = 0.9
FLOOR_POSITION = [0.0, 0.0, -1.0]  # top face at z = 0

# Rotate 180 degrees around the z axis, so the base points along -x
# and the body trails behind it
ROBOT_ORIENTATION = [0.0, 0.0, 0.0, 1.0]

# --- ROBOT BUILDER DEFAULTS --- #
LINK_LENGTH = 0.15
LINK_RADIUS = 0.045
LINK_DENSITY = 500.0
LINK_FRICTION = 0.9
JOINT_KP = 4.0  # position servo gain (N m / rad)
JOINT_KV = 0.1
JOINT_DAMPING = 0.05
JOINT_ARMATURE = 0.01
JOINT_LIMIT = 90.0  # degrees, symmetric

# --- MPPI --- #
HORIZON = 64
SAMPLE_COUNT = 128
KAPPA = 100.0
DISCOUNT_FACTOR = 0.99
NOISE_STD = 0.1

# --- EPISODES --- #
EPISODE_LEN = 250
EPISODE_COUNT = 3
WARMUP_UPDATES = 10

# --- OBJECTIVE --- #
# [angular xyz, linear xyz]; ask for 1 m/s along +x
BASE_VEL_REF = [0.0, 0.0, 0.0, 1.0, 0.0, 0.0]
BASE_VEL_WEIGHT = [1.0, 1.0, 1.0, 1.0, 1.0, 1.0]
POWER_WEIGHT = 1e-4

# --- VALUE ESTIMATOR --- #
VALUE_HIDDEN_SIZE = 128
VALUE_BATCH_SIZE = 64
VALUE_EPOCHS = 4
VALUE_LEARNING_RATE = 1e-3

CWD = Path.cwd()
DATA = CWD / "__data__"
