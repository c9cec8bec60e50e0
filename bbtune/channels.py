"""Sample preparation: typed channel schema and validated channel arrays.

Raw log rows arrive as mappings from column name to a number or string.
The column names are resolved once against :class:`ChannelRole` into a
:class:`ChannelSchema`; every later lookup goes through the role enum.
"""
from __future__ import annotations

import logging
import math
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .errors import InsufficientDataError, MissingChannelError
from .models import AXES, AxisData, LogMetadata
from .runtime import CancellationToken, iter_chunks

logger = logging.getLogger(__name__)

# Plausibility limits for accepting a row
GYRO_LIMIT = 3000.0          # deg/s, exclusive
MOTOR_MIN = 900.0
MOTOR_MAX = 2100.0
MIN_VALID_ROWS = 10
DEFAULT_SAMPLE_RATE = 1000.0


class ChannelRole(Enum):
    """Known signals, keyed by their canonical decoded-log column name."""
    TIME = "time"

    GYRO_ROLL = "gyroADC[0]"
    GYRO_PITCH = "gyroADC[1]"
    GYRO_YAW = "gyroADC[2]"
    GYRO_UNFILT_ROLL = "gyroUnfilt[0]"
    GYRO_UNFILT_PITCH = "gyroUnfilt[1]"
    GYRO_UNFILT_YAW = "gyroUnfilt[2]"

    SETPOINT_ROLL = "setpoint[0]"
    SETPOINT_PITCH = "setpoint[1]"
    SETPOINT_YAW = "setpoint[2]"

    RC_ROLL = "rcCommand[0]"
    RC_PITCH = "rcCommand[1]"
    RC_YAW = "rcCommand[2]"
    RC_THROTTLE = "rcCommand[3]"

    MOTOR_0 = "motor[0]"
    MOTOR_1 = "motor[1]"
    MOTOR_2 = "motor[2]"
    MOTOR_3 = "motor[3]"
    MOTOR_4 = "motor[4]"
    MOTOR_5 = "motor[5]"
    MOTOR_6 = "motor[6]"
    MOTOR_7 = "motor[7]"

    ERPM_0 = "eRPM[0]"
    ERPM_1 = "eRPM[1]"
    ERPM_2 = "eRPM[2]"
    ERPM_3 = "eRPM[3]"

    P_ROLL = "axisP[0]"
    P_PITCH = "axisP[1]"
    P_YAW = "axisP[2]"
    I_ROLL = "axisI[0]"
    I_PITCH = "axisI[1]"
    I_YAW = "axisI[2]"
    D_ROLL = "axisD[0]"
    D_PITCH = "axisD[1]"
    D_YAW = "axisD[2]"
    F_ROLL = "axisF[0]"
    F_PITCH = "axisF[1]"
    F_YAW = "axisF[2]"
    SUM_ROLL = "axisSum[0]"
    SUM_PITCH = "axisSum[1]"
    SUM_YAW = "axisSum[2]"
    ERROR_ROLL = "axisError[0]"
    ERROR_PITCH = "axisError[1]"
    ERROR_YAW = "axisError[2]"

    VBAT = "vbatLatest"
    AMPERAGE = "amperageLatest"

    @property
    def aliases(self) -> Tuple[str, ...]:
        return (self.value,) + _EXPLORER_NAMES.get(self, ())


class _Absent:
    """Marker for a role the log does not provide."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False


ABSENT = _Absent()


def _explorer_names() -> Dict[ChannelRole, Tuple[str, ...]]:
    """Display names used by the Blackbox Explorer CSV export."""
    names: Dict[ChannelRole, Tuple[str, ...]] = {
        ChannelRole.TIME: ("time (us)",),
        ChannelRole.VBAT: ("Battery volt.",),
        ChannelRole.AMPERAGE: ("Amperage",),
        ChannelRole.RC_THROTTLE: ("RC Command [throttle]",),
    }
    for idx, axis in enumerate(AXES):
        names[ChannelRole(f"gyroADC[{idx}]")] = (f"Gyro [{axis}]",)
        names[ChannelRole(f"gyroUnfilt[{idx}]")] = (f"Unfiltered Gyro [{axis}]",)
        names[ChannelRole(f"setpoint[{idx}]")] = (f"Setpoint [{axis}]",)
        names[ChannelRole(f"rcCommand[{idx}]")] = (f"RC Command [{axis}]",)
        names[ChannelRole(f"axisP[{idx}]")] = (f"PID P [{axis}]",)
        names[ChannelRole(f"axisI[{idx}]")] = (f"PID I [{axis}]",)
        names[ChannelRole(f"axisD[{idx}]")] = (f"PID D [{axis}]",)
        names[ChannelRole(f"axisF[{idx}]")] = (f"PID Feedforward [{axis}]",)
        names[ChannelRole(f"axisSum[{idx}]")] = (f"PID Sum [{axis}]",)
        names[ChannelRole(f"axisError[{idx}]")] = (f"PID Error [{axis}]",)
    for m in range(8):
        names[ChannelRole(f"motor[{m}]")] = (f"Motor [{m + 1}]",)
    for m in range(4):
        names[ChannelRole(f"eRPM[{m}]")] = (f"RPM [{m + 1}]",)
    return names


_EXPLORER_NAMES = _explorer_names()

GYRO_ROLES = (ChannelRole.GYRO_ROLL, ChannelRole.GYRO_PITCH, ChannelRole.GYRO_YAW)
RC_ROLES = (ChannelRole.RC_ROLL, ChannelRole.RC_PITCH, ChannelRole.RC_YAW)
MOTOR_ROLES = tuple(ChannelRole(f"motor[{m}]") for m in range(8))
ERPM_ROLES = tuple(ChannelRole(f"eRPM[{m}]") for m in range(4))

# axis name -> signal kind -> role
AXIS_ROLES: Dict[str, Dict[str, ChannelRole]] = {
    axis: {
        "gyro": ChannelRole(f"gyroADC[{idx}]"),
        "gyro_unfiltered": ChannelRole(f"gyroUnfilt[{idx}]"),
        "setpoint": ChannelRole(f"setpoint[{idx}]"),
        "rc": ChannelRole(f"rcCommand[{idx}]"),
        "p": ChannelRole(f"axisP[{idx}]"),
        "i": ChannelRole(f"axisI[{idx}]"),
        "d": ChannelRole(f"axisD[{idx}]"),
        "f": ChannelRole(f"axisF[{idx}]"),
        "sum": ChannelRole(f"axisSum[{idx}]"),
        "error": ChannelRole(f"axisError[{idx}]"),
    }
    for idx, axis in enumerate(AXES)
}


class ChannelSchema:
    """Role -> column name mapping, resolved once per log."""

    def __init__(self, columns: Mapping[ChannelRole, object]):
        self._columns = {role: columns.get(role, ABSENT) for role in ChannelRole}

    @classmethod
    def resolve(cls, fieldnames: Iterable[str]) -> "ChannelSchema":
        present = {}
        for name in fieldnames:
            present.setdefault(str(name).strip(), name)
        columns = {}
        for role in ChannelRole:
            columns[role] = ABSENT
            for alias in role.aliases:
                if alias in present:
                    columns[role] = present[alias]
                    break
        return cls(columns)

    def column(self, role: ChannelRole):
        """Column name for *role*, or ``ABSENT``."""
        return self._columns[role]

    def has(self, role: ChannelRole) -> bool:
        return self._columns[role] is not ABSENT

    @property
    def present_roles(self) -> List[ChannelRole]:
        return [role for role in ChannelRole if self.has(role)]

    def __repr__(self) -> str:
        return f"ChannelSchema({len(self.present_roles)} of {len(ChannelRole)} roles present)"


class ChannelSet:
    """Validated, length-aligned, read-only channels for one log."""

    def __init__(
        self,
        channels: Mapping[ChannelRole, np.ndarray],
        time: np.ndarray,
        sample_rate: float,
        schema: Optional[ChannelSchema] = None,
    ):
        self._channels: Dict[ChannelRole, np.ndarray] = {}
        n = len(time)
        for role, values in channels.items():
            arr = np.array(values, dtype=np.float64)
            if len(arr) != n:
                raise ValueError(f"Channel {role.value} has {len(arr)} samples, expected {n}")
            arr.setflags(write=False)
            self._channels[role] = arr
        self._time = np.array(time, dtype=np.float64)
        self._time.setflags(write=False)
        self.sample_rate = float(sample_rate)
        self.schema = schema or ChannelSchema({role: role.value for role in self._channels})

    @classmethod
    def from_arrays(cls, sample_rate: float, **arrays: np.ndarray) -> "ChannelSet":
        """Build a set from keyword arrays named after :class:`ChannelRole` members.

        Handy for synthetic signals: ``ChannelSet.from_arrays(1000, GYRO_ROLL=g)``.
        Time is synthesized from the sample rate unless ``TIME`` is given.
        """
        channels = {ChannelRole[name]: np.asarray(values, dtype=np.float64)
                    for name, values in arrays.items()}
        time = channels.pop(ChannelRole.TIME, None)
        n = len(next(iter(channels.values()))) if channels else 0
        if time is None:
            time = np.arange(n) / float(sample_rate)
        return cls(channels, time, sample_rate)

    def __len__(self) -> int:
        return len(self._time)

    @property
    def time(self) -> np.ndarray:
        return self._time

    @property
    def roles(self) -> List[ChannelRole]:
        return list(self._channels)

    def has(self, role: ChannelRole) -> bool:
        return role in self._channels

    def get(self, role: ChannelRole) -> np.ndarray:
        try:
            return self._channels[role]
        except KeyError:
            raise MissingChannelError(f"Log has no {role.value} channel") from None

    def get_or_zeros(self, role: ChannelRole) -> np.ndarray:
        if role in self._channels:
            return self._channels[role]
        return np.zeros(len(self), dtype=np.float64)

    def motors(self) -> List[np.ndarray]:
        return [self._channels[r] for r in MOTOR_ROLES if r in self._channels]

    def erpm(self) -> List[np.ndarray]:
        return [self._channels[r] for r in ERPM_ROLES if r in self._channels]

    def axis(self, name: str) -> AxisData:
        """Collect the signals of one control axis.

        The command is the logged setpoint when present, else the RC command.
        Raises :class:`MissingChannelError` when neither gyro nor a command
        source exists for the axis.
        """
        roles = AXIS_ROLES[name]
        gyro = self.get(roles["gyro"])
        if self.has(roles["setpoint"]):
            command = self._channels[roles["setpoint"]]
        else:
            command = self.get(roles["rc"])
        return AxisData(
            name=name,
            gyro=gyro,
            command=command,
            time=self._time,
            p_term=self.get_or_zeros(roles["p"]),
            i_term=self.get_or_zeros(roles["i"]),
            d_term=self.get_or_zeros(roles["d"]),
            f_term=self.get_or_zeros(roles["f"]),
            error=self._channels.get(roles["error"]),
            gyro_unfiltered=self._channels.get(roles["gyro_unfiltered"]),
        )


# ---------------------------------------------------------------------------
# Preparation
# ---------------------------------------------------------------------------

def _to_float(value) -> float:
    """Parse a raw field; missing, unparseable and non-finite values become 0."""
    if value is None:
        return 0.0
    try:
        out = float(value)
    except (TypeError, ValueError):
        return 0.0
    return out if math.isfinite(out) else 0.0


def valid_row_mask(channels: Mapping[ChannelRole, np.ndarray], n: int) -> np.ndarray:
    """Rows where every gyro axis is < 3000 deg/s and every motor is in range."""
    mask = np.ones(n, dtype=bool)
    for role in GYRO_ROLES:
        if role in channels:
            mask &= np.abs(channels[role]) < GYRO_LIMIT
    for role in MOTOR_ROLES:
        if role in channels:
            values = channels[role]
            mask &= (values >= MOTOR_MIN) & (values <= MOTOR_MAX)
    return mask


def estimate_sample_rate(time_us: np.ndarray) -> Optional[float]:
    """Sample rate from the median positive time delta (microseconds)."""
    if len(time_us) < 2:
        return None
    dts = np.diff(time_us)
    dts = dts[dts > 0]
    if len(dts) == 0:
        return None
    return 1_000_000.0 / float(np.median(dts))


def prepare_channels(
    rows: Sequence[Mapping[str, object]],
    fieldnames: Optional[Iterable[str]] = None,
    sample_rate: Optional[float] = None,
    metadata: Optional[LogMetadata] = None,
    cancel: Optional[CancellationToken] = None,
) -> ChannelSet:
    """Validate raw rows and extract one aligned channel per known role.

    Parameters
    ----------
    rows : sequence of mappings
        Raw log rows, column name -> numeric or string value.
    fieldnames : iterable of str, optional
        Column names present in this log. Defaults to the first row's keys.
    sample_rate : float, optional
        Explicit sample rate in Hz. Otherwise taken from ``metadata``
        looptime, then from the time column, then 1000 Hz.
    metadata : LogMetadata, optional
    cancel : CancellationToken, optional
        Checked between chunks of rows.

    Returns
    -------
    ChannelSet

    Raises
    ------
    InsufficientDataError
        Fewer than 10 rows pass validation.
    """
    rows = list(rows)
    n = len(rows)
    if fieldnames is None:
        fieldnames = list(rows[0].keys()) if rows else []
    schema = ChannelSchema.resolve(fieldnames)
    present = [(role, schema.column(role)) for role in schema.present_roles]

    raw = {role: np.zeros(n, dtype=np.float64) for role, _ in present}
    for start, stop in iter_chunks(n, cancel=cancel):
        for role, column in present:
            out = raw[role]
            for k in range(start, stop):
                out[k] = _to_float(rows[k].get(column))

    mask = valid_row_mask(raw, n)
    n_valid = int(mask.sum())
    if n_valid < n:
        logger.debug("Rejected %d of %d rows outside plausible gyro/motor ranges", n - n_valid, n)
    if n_valid < MIN_VALID_ROWS:
        raise InsufficientDataError("sample preparation", MIN_VALID_ROWS, n_valid)

    channels = {role: values[mask] for role, values in raw.items()}
    time_us = channels.pop(ChannelRole.TIME, None)

    rate = sample_rate
    if rate is None and metadata is not None:
        rate = metadata.sample_rate
    if rate is None and time_us is not None:
        rate = estimate_sample_rate(time_us)
    if rate is None or rate <= 0:
        logger.warning("No sample rate available; assuming %.0f Hz", DEFAULT_SAMPLE_RATE)
        rate = DEFAULT_SAMPLE_RATE

    if time_us is not None and np.all(np.diff(time_us) > 0):
        time_s = time_us / 1_000_000.0
    else:
        if time_us is not None:
            logger.warning("Time column is not strictly increasing; synthesizing from sample rate")
        time_s = np.arange(n_valid) / rate

    return ChannelSet(channels, time_s, rate, schema)
