"""Build a firmware target and flash it through dfu-util."""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence, TextIO

log = logging.getLogger(__name__)

DFU_DEVICE_PREFIX = "Found DFU: "
INTERNAL_FLASH_MARKER = "@Internal Flash  /"

_ALT_RE = re.compile(r"alt=(\d+)")
_SERIAL_RE = re.compile(r'serial="(.*?)"')
_OFFSET_RE = re.compile(r"Internal Flash  /([\dx]*?)/")


class FlashError(RuntimeError):
    """Building or flashing the firmware failed."""


@dataclass(frozen=True)
class DfuDevice:
    alt: str
    serial: str
    offset: str
    description: str

    @classmethod
    def parse(cls, line: str) -> "DfuDevice":
        """Parse one ``dfu-util --list`` device description.

        A line looks like::

            [0483:df11] ver=2200, devnum=17, cfg=1, intf=0, path="20-1", alt=0,
            name="@Internal Flash  /0x08000000/04*016Kg,01*064Kg,07*128Kg", serial="3276365D3336"
        """

        alt = _ALT_RE.search(line)
        serial = _SERIAL_RE.search(line)
        offset = _OFFSET_RE.search(line)
        if not (alt and serial and offset and offset.group(1)):
            raise FlashError(f"could not determine flash parameters from {line!r}")
        return cls(alt=alt.group(1), serial=serial.group(1), offset=offset.group(1), description=line)


class DfuFlasher:
    def __init__(
        self,
        *,
        output: Optional[TextIO] = None,
        make_command: str = "make",
        dfu_util: str = "dfu-util",
        timeout: float = 30.0,
        poll_interval: float = 0.2,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        which: Callable[[str], Optional[str]] = shutil.which,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._output = output or sys.stdout
        self.make_command = make_command
        self.dfu_util = dfu_util
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._run = runner
        self._which = which
        self._clock = clock
        self._sleep = sleep

    def _print(self, message: str) -> None:
        print(message, file=self._output, flush=True)

    def _call(self, args: Sequence[str], **kwargs) -> subprocess.CompletedProcess:
        log.debug("running %s", " ".join(args))
        try:
            return self._run(list(args), **kwargs)
        except subprocess.CalledProcessError as exc:
            raise FlashError(f"{args[0]} exited with status {exc.returncode}") from exc
        except OSError as exc:
            raise FlashError(f"could not run {args[0]}: {exc}") from exc

    def locate_dfu_util(self) -> str:
        path = self._which(self.dfu_util)
        if path is None:
            raise FlashError(f"{self.dfu_util} not found in PATH")
        return path

    def build(self, src_dir: Path, target: str) -> None:
        self._print(f"Building binary for {target}...")
        env = dict(os.environ)
        env["TARGET"] = target
        self._call([self.make_command, "binary"], cwd=str(src_dir), env=env, check=True)

    def find_binary(self, src_dir: Path, target: str) -> Path:
        """Return the newest ``obj/*.bin`` whose name ends with *target*."""

        obj = Path(src_dir) / "obj"
        if not obj.is_dir():
            raise FlashError(f"output directory {obj} does not exist")
        candidates = [
            path for path in obj.iterdir() if path.suffix == ".bin" and path.stem.endswith(target)
        ]
        if not candidates:
            raise FlashError(f"could not find binary for target {target}")
        return max(candidates, key=lambda path: path.stat().st_mtime)

    def list_devices(self, dfu_util: str) -> List[str]:
        result = self._call([dfu_util, "--list"], capture_output=True, text=True, check=False)
        devices: List[str] = []
        for line in (result.stdout or "").splitlines():
            line = line.strip()
            if line.startswith(DFU_DEVICE_PREFIX):
                devices.append(line[len(DFU_DEVICE_PREFIX) :])
        return devices

    def wait_for_device(self, dfu_util: str) -> DfuDevice:
        deadline = self._clock() + self.timeout
        while True:
            for line in self.list_devices(dfu_util):
                if INTERNAL_FLASH_MARKER in line:
                    return DfuDevice.parse(line)
            if self._clock() >= deadline:
                raise FlashError("timed out while waiting for board in DFU mode")
            self._sleep(self.poll_interval)

    def write(self, dfu_util: str, device: DfuDevice, binary: Path) -> None:
        self._print(f"Flashing {binary.name} via DFU to offset {device.offset}...")
        self._call(
            [
                dfu_util,
                "-a",
                device.alt,
                "-S",
                device.serial,
                "-s",
                f"{device.offset}:leave",
                "-D",
                str(binary),
            ],
            check=True,
        )

    def flash(self, src_dir: Path, target: str, reboot_to_bootloader: Callable[[], None]) -> None:
        """Build *target* in *src_dir*, reboot the board into DFU and flash it."""

        dfu_util = self.locate_dfu_util()
        self.build(Path(src_dir), target)
        binary = self.find_binary(Path(src_dir), target)
        self._print("Rebooting board in DFU mode...")
        try:
            reboot_to_bootloader()
        except OSError as exc:
            raise FlashError(f"could not reboot into bootloader: {exc}") from exc
        device = self.wait_for_device(dfu_util)
        self.write(dfu_util, device, binary)
