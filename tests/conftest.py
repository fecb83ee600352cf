import logging

import pytest

from device_profile import DeviceProfile

TEST_UUID = "3f2504e0-4f89-41d3-9a0c-0305e82c3301"


@pytest.fixture
def profile():
    return DeviceProfile(
        hostname="dev.local",
        local_address="127.0.0.1",
        http_port=8080,
        uuid=TEST_UUID,
        friendly_name="Dev Box",
        manufacturer="Acme",
        model_name="Widget",
    )


@pytest.fixture
def logger():
    return logging.getLogger("ssdp-responder-test")
