# Shared fixtures: in-memory store, a throwaway signing key, test config

import asyncio
import os
import sys
from pathlib import Path

import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Set test environment
os.environ["ENV"] = "development"

from target_helper.shared.config import Config  # noqa: E402
from target_helper.signing import SigningService  # noqa: E402
from target_helper.store import InMemoryResourceStore  # noqa: E402


@pytest.fixture(scope="session")
def private_jwk():
    """RSA private key as a JWK, generated once per session"""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    jwk = RSAAlgorithm.to_jwk(key, as_dict=True)
    jwk["kid"] = "target-helper-test"
    return jwk


@pytest.fixture
def signer(private_jwk):
    return SigningService(
        private_jwk,
        signer={"name": "Test signer", "url": "https://oatscenter.org"},
    )


@pytest.fixture
def store():
    return InMemoryResourceStore()


@pytest.fixture
def config():
    return Config(timeouts={"pdf": 5, "asn": 5}, reaper={"enabled": True})


@pytest.fixture
def wait_for():
    """Poll a predicate until it holds, yielding to the event loop in between"""

    async def _wait_for(predicate, timeout: float = 2.0, interval: float = 0.005):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return result
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(interval)

    return _wait_for
