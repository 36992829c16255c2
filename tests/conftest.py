"""
Pytest Configuration and Shared Fixtures
=========================================

Provides the candy study (price x packaging x flavor) and synthetic
choice data shared across the test modules.
"""

import sys
from pathlib import Path

import pytest

# Add project root and this directory to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))
sys.path.insert(0, str(Path(__file__).parent))

from conjoint.design import AttributeSpace  # noqa: E402
from conjoint.models import Attribute, UtilityDraw  # noqa: E402
from fitters import make_observations  # noqa: E402


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture(scope="session")
def project_root():
    """Return project root path."""
    return PROJECT_ROOT


@pytest.fixture(scope="session")
def config_path():
    """Path to the bundled candy study config."""
    return PROJECT_ROOT / "configs" / "candy.yaml"


# =============================================================================
# Study Fixtures
# =============================================================================

@pytest.fixture
def candy_attributes():
    """Three attributes: 3 x 2 x 2 = 12 profiles."""
    return [
        Attribute(name="price", levels=["$2", "$3", "$4"]),
        Attribute(name="packaging", levels=["paper", "sticker"]),
        Attribute(name="flavor", levels=["chocolate", "nuts"]),
    ]


@pytest.fixture
def space(candy_attributes):
    return AttributeSpace(candy_attributes)


@pytest.fixture
def lpm_coefficients():
    """Linear probability model point estimates (reference levels omitted)."""
    return UtilityDraw(
        values={
            "price": {"$3": -0.1, "$4": -0.2},
            "packaging": {"sticker": 0.05},
            "flavor": {"nuts": 0.1},
        },
        intercept=0.5,
    )


@pytest.fixture
def posterior_draws():
    """Twenty population-level draws with a clear price gradient."""
    draws = []
    for d in range(20):
        jitter = (d - 9.5) / 100
        draws.append(
            UtilityDraw(
                values={
                    "price": {"$3": -0.5 + jitter, "$4": -1.0 + jitter},
                    "packaging": {"sticker": 0.3 - jitter},
                    "flavor": {"nuts": -0.2 + 2 * jitter},
                },
                draw=d,
                chain=1,
            )
        )
    return draws


# =============================================================================
# Data Fixtures
# =============================================================================

@pytest.fixture
def observations(space):
    """6 respondents x 4 two-alternative tasks."""
    return make_observations(space)
