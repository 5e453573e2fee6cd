"""Constants used throughout the deploypool codebase."""

# Timing constants
WAIT_TIMEOUT_SECONDS = 0.5
DEFAULT_JOB_TIMEOUT_SECONDS = 900.0
DEFAULT_SHUTDOWN_TIMEOUT_SECONDS = 10.0
KILL_GRACE_SECONDS = 3.0

# Verification backoff, in seconds
VERIFY_INITIAL_DELAY_SECONDS = 30.0
VERIFY_RETRY_DELAYS_SECONDS = (30.0, 45.0, 60.0, 90.0)
VERIFY_COMMAND_TIMEOUT_SECONDS = 180.0
VERIFY_COMMAND = ("npx", "hardhat", "verify")

# Receipt wait for contract deployment
DEPLOY_RECEIPT_TIMEOUT_SECONDS = 300

DEFAULT_PORT = 32156
DEFAULT_HOST = "0.0.0.0"

# Job phases reported by workers
PHASE_STARTED = "started"
PHASE_DEPLOYED = "deployed"

# Times a job whose worker died before starting it is put back on the queue
MAX_JOB_REQUEUES = 1
