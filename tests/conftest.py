import os

# Keep tests from installing tracing instrumentation
os.environ.setdefault("DISABLE_TELEMETRY", "true")
