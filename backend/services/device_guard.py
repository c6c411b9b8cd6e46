from dataclasses import dataclass
from typing import Literal, Mapping, Any

DeviceVerdict = Literal["bind", "match", "backfill_client", "mismatch", "cloning"]


@dataclass(frozen=True)
class DeviceCheck:
    verdict: DeviceVerdict

    @property
    def allowed(self) -> bool:
        return self.verdict in ("bind", "match", "backfill_client")

    @property
    def needs_write(self) -> bool:
        return self.verdict in ("bind", "backfill_client")


def check_device(user: Mapping[str, Any], device_id: str, user_agent: str) -> DeviceCheck:
    """
    Compare a presented device/client signature pair against the participant's binding.

    An unbound participant binds on first use. A bound device must match exactly; a
    matching device with a different, already-recorded client signature is treated as
    a cloned device. A binding with no client signature yet gets it filled in.
    """
    stored_device = user.get("registered_device_id")
    stored_agent = user.get("registered_user_agent")

    if not stored_device:
        return DeviceCheck("bind")
    if stored_device != device_id:
        return DeviceCheck("mismatch")
    if stored_agent and stored_agent != user_agent:
        return DeviceCheck("cloning")
    if not stored_agent:
        return DeviceCheck("backfill_client")
    return DeviceCheck("match")
