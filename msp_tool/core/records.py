"""Payload layouts for the MSP messages the tool reads and writes."""

from __future__ import annotations

from dataclasses import dataclass

from .codec import U8, U16, U32, Array, Repeated, Struct


@dataclass
class APIVersion:
    protocol: int
    major: int
    minor: int


@dataclass
class FCVersion:
    major: int
    minor: int
    patch: int


@dataclass
class SerialConfig:
    """One serial port entry of MSP_CF_SERIAL_CONFIG."""

    identifier: int
    function_mask: int
    msp_baud_index: int
    gps_baud_index: int
    telemetry_baud_index: int
    # blackbox baud index in Betaflight
    peripheral_baud_index: int


API_VERSION = Struct(APIVersion, ("protocol", U8), ("major", U8), ("minor", U8))
FC_VERSION = Struct(FCVersion, ("major", U8), ("minor", U8), ("patch", U8))

SERIAL_CONFIG = Struct(
    SerialConfig,
    ("identifier", U8),
    ("function_mask", U16),
    ("msp_baud_index", U8),
    ("gps_baud_index", U8),
    ("telemetry_baud_index", U8),
    ("peripheral_baud_index", U8),
)
SERIAL_CONFIGS = Repeated(SERIAL_CONFIG)

FEATURES = U32
BOARD_ID = Array(U8, 4)
RX_MAP = Array(U8, 8)
RC_CHANNELS = Repeated(U16)
PID_TABLE = Array(U8, 30)
