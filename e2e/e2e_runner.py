"""
End-to-end lifecycle run against a live FHIR server.

Usage:
  1. Point FHIR_BASE_URI / FHIR_BASE_PATH at a FHIR server (or a .env file).
  2. Run this script: python e2e/e2e_runner.py
     Pass --sandbox to start the in-memory sandbox server and run against it.
  3. The script will exit 0 if every step passes, nonzero otherwise.
"""
import logging
import os
import subprocess
import sys
import time

import requests

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
from fhir_lifecycle.client import ResourceClient, SystemClient, join_url
from fhir_lifecycle.config import load_settings
from fhir_lifecycle.fixtures import condition_lifecycle, patient_lifecycle
from fhir_lifecycle.reporter import ConsoleReporter
from fhir_lifecycle.runner import OrderedFixtureRunner

RESOURCES_DIR = os.path.join(os.path.dirname(__file__), "resources")
SAMPLE_CONDITION = os.path.join(RESOURCES_DIR, "sample_condition.json")
SAMPLE_PATIENT_CONDITION = os.path.join(RESOURCES_DIR, "sample_patient_condition.json")


def start_sandbox(settings):
    # Start the sandbox as a subprocess serving on settings.base_uri's port
    env = os.environ.copy()
    env["PYTHONPATH"] = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
    env["SANDBOX_PORT"] = str(settings.sandbox_port)
    env["FHIR_BASE_PATH"] = settings.base_path
    proc = subprocess.Popen([sys.executable, "-m", "fhir_lifecycle.sandbox"], env=env)
    metadata_url = join_url(settings.base_uri, settings.base_path, "/metadata")
    # Wait for the server to come up or fail
    for _ in range(20):  # wait up to ~10s
        try:
            resp = requests.get(metadata_url, timeout=0.5)
            if resp.status_code == 200:
                return proc
        except requests.exceptions.RequestException:
            pass
        if proc.poll() is not None:
            break  # Process exited
        time.sleep(0.5)
    stop_sandbox(proc)
    print(f"\nERROR: Sandbox server did not start at {metadata_url}.\n", file=sys.stderr)
    sys.exit(2)


def stop_sandbox(proc):
    if proc.poll() is None:
        proc.terminate()
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            proc.kill()


def run_lifecycles(settings) -> int:
    """Run the Patient and Condition lifecycles; returns the number of failed or skipped steps."""
    reporter = ConsoleReporter()
    system = SystemClient.from_settings(settings)
    runs = [
        (
            OrderedFixtureRunner(
                "Patient lifecycle",
                patient_lifecycle(system=system, document_path=SAMPLE_PATIENT_CONDITION),
                observers=[reporter],
            ),
            ResourceClient.from_settings(settings, "Patient"),
        ),
        (
            OrderedFixtureRunner(
                "Condition lifecycle",
                condition_lifecycle(document_path=SAMPLE_CONDITION),
                observers=[reporter],
            ),
            ResourceClient.from_settings(settings, "Condition"),
        ),
    ]
    problems = 0
    for runner, client in runs:
        summary = runner.run(client)
        problems += summary.failed + summary.skipped
    reporter.print_totals()
    return problems


if __name__ == "__main__":
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "WARNING"))
    settings = load_settings()
    sandbox = start_sandbox(settings) if "--sandbox" in sys.argv[1:] else None
    try:
        problems = run_lifecycles(settings)
    finally:
        if sandbox is not None:
            stop_sandbox(sandbox)
    if problems:
        print(f"\n{problems} step(s) failed or were skipped.")
        sys.exit(1)
    print("\nAll lifecycle steps passed!")
    sys.exit(0)
