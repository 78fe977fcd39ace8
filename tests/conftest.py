from datetime import datetime, timezone

import pytest

from qastudio.core.models import Locator, RecordedStep
from qastudio.generators.spec_generator import capture_source
from qastudio.services.spec_writer import SpecWriter
from qastudio.transforms.parameter_detector import detect

FIXED_NOW = datetime(2026, 1, 15, 9, 30, tzinfo=timezone.utc)

ERP_URL = "https://erp.example.com/?mi=CustTableListPage"


def create_customer_steps():
    return [
        RecordedStep(1, "navigate", value=ERP_URL, timestamp=1.0),
        RecordedStep(2, "navigate", value="https://login.microsoftonline.com/common/oauth2", timestamp=2.0),
        RecordedStep(3, "navigate", value=ERP_URL, timestamp=3.0),
        RecordedStep(
            4,
            "click",
            locators=(Locator("role", "button", name="New"), Locator("css", "#new-btn")),
            timestamp=4.0,
        ),
        RecordedStep(5, "fill", locators=(Locator("label", "Customer Name"),), value="Acme Corp", timestamp=5.0),
        RecordedStep(6, "click", locators=(Locator("role", "button", name="Save"),), timestamp=6.0),
        RecordedStep(
            7,
            "assert",
            locators=(Locator("text", "Customer created"),),
            assertion="to_be_visible",
            timestamp=7.0,
        ),
    ]


def customer_name_binding(steps):
    """Bind the Customer Name candidate the way a user would after detection."""
    candidate = next(c for c in detect(capture_source(steps)[0]) if c.label == "Customer Name")
    return [{"id": candidate.id, "variableName": "customerName"}]


@pytest.fixture
def steps():
    return create_customer_steps()


@pytest.fixture
def bundle_root(tmp_path):
    return tmp_path / "bundles"


@pytest.fixture
def written_bundle(bundle_root, steps):
    writer = SpecWriter(bundle_root)
    return writer.generate(
        "Create Customer",
        steps,
        module="Accounts receivable",
        parameter_bindings=customer_name_binding(steps),
        now=FIXED_NOW,
    )


@pytest.fixture
def customer_binding(steps):
    return customer_name_binding(steps)


@pytest.fixture
def fixed_now():
    return FIXED_NOW
