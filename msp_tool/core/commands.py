"""MSP command identifiers and flag bits used across the project."""

from enum import IntEnum


class MSPCommand(IntEnum):
    MSP_API_VERSION = 1
    MSP_FC_VARIANT = 2
    MSP_FC_VERSION = 3
    MSP_BOARD_INFO = 4
    MSP_BUILD_INFO = 5
    MSP_FEATURE = 36
    MSP_SET_FEATURE = 37
    MSP_CF_SERIAL_CONFIG = 54
    MSP_SET_CF_SERIAL_CONFIG = 55
    MSP_RX_MAP = 64
    MSP_REBOOT = 68
    MSP_PID = 112
    MSP_SET_RAW_RC = 200
    MSP_SET_PID = 202
    MSP_EEPROM_WRITE = 250
    MSP_DEBUG_MSG = 253


FEATURE_DEBUG_TRACE = 1 << 31

SERIAL_FUNCTION_MSP = 1 << 0
SERIAL_FUNCTION_DEBUG_TRACE = 1 << 15

# Sent on every successful (re)connect, in this order.
IDENTIFICATION_COMMANDS = (
    MSPCommand.MSP_API_VERSION,
    MSPCommand.MSP_FC_VARIANT,
    MSPCommand.MSP_FC_VERSION,
    MSPCommand.MSP_BOARD_INFO,
    MSPCommand.MSP_BUILD_INFO,
    MSPCommand.MSP_FEATURE,
    MSPCommand.MSP_CF_SERIAL_CONFIG,
    MSPCommand.MSP_RX_MAP,
)
