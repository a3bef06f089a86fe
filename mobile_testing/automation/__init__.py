"""Appium lifecycle, sessions, retries and reporting for mobile suites."""

from .flake_tracker import FlakeTracker
from .retry import RetryPolicy, RetrySettings
from .suite import SuiteRuntime
