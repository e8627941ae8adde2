import os
import tempfile

# config creates DATA_DIR and the log file at import time.
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="flash-arb-tests-"))
os.environ.pop("AGGREGATOR_API_KEY", None)
os.environ.pop("EMERGENCY_STOP", None)
