DEFAULT_TICK_INTERVAL_SECONDS = 60.0
DEFAULT_DISPATCH_TIMEOUT_SECONDS = 30.0
DEFAULT_DISPATCH_PATH = "/executeWorkflow"
DEFAULT_MAX_RUNS_PER_TICK = 100
DEFAULT_CLAIM_TIMEOUT_SECONDS = 300.0
WEBHOOK_KEY_BYTES = 32
