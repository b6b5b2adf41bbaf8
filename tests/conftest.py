"""Test configuration and fixtures for the users service."""

from tests.fixtures import *  # noqa: F401,F403
