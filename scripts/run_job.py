from pathlib import Path
import argparse
import json
import os
import sys

# Ensure repo root is on sys.path and is the working directory.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
os.chdir(ROOT)

from custody_engine.logging import setup_logging
from custody_engine.pipeline.jobs import JOB_TYPES
from custody_engine.pipeline.orchestrator import run_job_now

if __name__ == '__main__':
    parser = argparse.ArgumentParser(description="Run one job to completion, with its lock and retry policy.")
    parser.add_argument("job_type", choices=JOB_TYPES)
    args = parser.parse_args()
    setup_logging()
    run = run_job_now(args.job_type)
    print(json.dumps(run, indent=2, default=str))
    sys.exit(0 if run["status"] in ("succeeded", "skipped") else 1)
