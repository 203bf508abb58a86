"""
DSP Write Gate - should an operator control write be accepted?

Single pure policy function. Every mutation entry point calls it, not only
the UI: the server-side check prevents silent no-op controls when the
browser is running stale cached JS or a non-UI client calls the API.
"""

from typing import Tuple, Union

from .types import HealthState, OperatingMode

DISCONNECTED_REASON = "DSP is disconnected (run 'Test DSP Now' to confirm link)"


def allowed(mode: Union[OperatingMode, str], health: Union[HealthState, str]) -> Tuple[bool, str]:
    """
    Returns (allowed, reason). reason is empty when allowed.

    - mock: always allowed (there is no real device to protect)
    - live: denied only when health is DISCONNECTED
    """
    if OperatingMode(mode) == OperatingMode.MOCK:
        return True, ""
    if HealthState(health) == HealthState.DISCONNECTED:
        return False, DISCONNECTED_REASON
    return True, ""
