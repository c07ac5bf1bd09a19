'''Single register writes to the clock chip.

Anything with a write_register(address, data) -> bool method and a list of
failed addresses will do.  Two implementations are provided:

RecordingTransport keeps an image of everything written, in order.  This is
used for dry runs, reporting and testing.

CP2112 drives a Silicon Labs CP2112 USB to I2C bridge via pyusb.  The CP2112
is a HID device; we talk to its interrupt endpoints directly, so that we don't
need a HID library, and so that finding the device works the same as for any
other USB device.'''

from .si5351 import RegisterImage, register_name

import struct
import sys

from typing import Protocol, Tuple
from usb.core import Device, USBError # pyright: ignore

class TransportFailure(IOError):
    pass

class Transport(Protocol):
    failed: list[int]
    def write_register(self, address: int, data: int) -> bool: ...

def trace(address: int, data: int, ok: bool = True) -> None:
    status = '' if ok else ' FAILED'
    print(f'{register_name(address):13} R{address:<3} = {data:#04x}{status}',
          file=sys.stderr)

class RecordingTransport:
    image: RegisterImage
    writes: list[Tuple[int, int]]
    failed: list[int]
    verbose: bool

    def __init__(self, verbose: bool = False, fail: tuple[int, ...] = ()):
        '''Addresses in fail are not acknowledged.'''
        self.image = RegisterImage()
        self.writes = []
        self.failed = []
        self.verbose = verbose
        self.fail = fail

    def write_register(self, address: int, data: int) -> bool:
        assert 0 <= address <= 255 and 0 <= data <= 255
        ok = address not in self.fail
        if self.verbose:
            trace(address, data, ok)
        self.writes.append((address, data))
        if not ok:
            self.failed.append(address)
            return False
        self.image.insert(address, data)
        return True

CP2112_VID = 0x10c4
CP2112_PID = 0xea90

# HID report IDs.
SMBUS_CONFIG = 0x06
DATA_WRITE_REQUEST = 0x14
TRANSFER_STATUS_REQUEST = 0x15
TRANSFER_STATUS_RESPONSE = 0x16

# Transfer status, status 0.
STATUS_IDLE = 0
STATUS_BUSY = 1
STATUS_COMPLETE = 2
STATUS_ERROR = 3

OUT_ENDPOINT = 0x01
IN_ENDPOINT = 0x81

# HID class SET_REPORT request, for a feature report.
SET_REPORT = 0x09
FEATURE_REPORT = 0x0300

class CP2112:
    usb: Device
    address: int
    timeout: int
    polls: int
    failed: list[int]
    verbose: bool

    def __init__(self, device: Device, address: int, speed: int = 400_000,
                 timeout: int = 100, polls: int = 20, verbose: bool = False):
        self.usb = device
        self.address = address
        self.timeout = timeout
        self.polls = polls
        self.failed = []
        self.verbose = verbose
        try:
            device.detach_kernel_driver(0) # pyright: ignore
        except USBError:
            pass
        self.configure(speed)

    def configure(self, speed: int) -> None:
        # Clock speed, our own address, no auto-send-read, write & read
        # timeouts in ms, SCL low timeout enabled, retry count.
        report = struct.pack('>BIBBHHBH', SMBUS_CONFIG, speed, 2, 0,
                             self.timeout, self.timeout, 1, 3)
        self.usb.ctrl_transfer(0x21, SET_REPORT, # pyright: ignore
                               FEATURE_REPORT | SMBUS_CONFIG, 0, report)

    def status(self) -> int:
        self.usb.write(OUT_ENDPOINT, # pyright: ignore
                       bytes((TRANSFER_STATUS_REQUEST, 1)), self.timeout)
        # Skip over any other input reports, but not forever.
        for _ in range(self.polls):
            r = bytes(self.usb.read( # pyright: ignore
                IN_ENDPOINT, 64, self.timeout))
            if len(r) >= 2 and r[0] == TRANSFER_STATUS_RESPONSE:
                return r[1]
        return STATUS_ERROR

    def transfer(self, address: int, data: int) -> bool:
        self.usb.write(OUT_ENDPOINT, bytes( # pyright: ignore
            (DATA_WRITE_REQUEST, self.address << 1, 2, address, data)),
                       self.timeout)
        for _ in range(self.polls):
            status = self.status()
            if status == STATUS_BUSY:
                continue
            return status != STATUS_ERROR
        return False

    def write_register(self, address: int, data: int) -> bool:
        try:
            ok = self.transfer(address, data)
        except USBError as e:
            print(f'USB error writing R{address}: {e}', file=sys.stderr)
            ok = False
        if self.verbose:
            trace(address, data, ok)
        if not ok:
            self.failed.append(address)
        return ok

def check(transport: Transport) -> None:
    '''Raise TransportFailure if any write was not acknowledged.'''
    if transport.failed:
        addrs = ' '.join(f'R{a}' for a in transport.failed)
        raise TransportFailure(f'Register writes failed: {addrs}')

class FakeUSB:
    '''Enough of a usb.core.Device to test CP2112 against.'''
    def __init__(self, statuses: list[int | bytes]):
        self.statuses = statuses
        self.written: list[bytes] = []
        self.control: list[Tuple[int, int, int, bytes]] = []
    def detach_kernel_driver(self, interface: int) -> None:
        raise USBError('No kernel driver')
    def ctrl_transfer(self, bmRequestType: int, bRequest: int, wValue: int,
                      wIndex: int, data: bytes) -> int:
        self.control.append((bmRequestType, bRequest, wValue, data))
        return len(data)
    def write(self, endpoint: int, data: bytes, timeout: int) -> int:
        assert endpoint == OUT_ENDPOINT
        self.written.append(bytes(data))
        return len(data)
    def read(self, endpoint: int, size: int, timeout: int) -> bytes:
        assert endpoint == IN_ENDPOINT
        s = self.statuses.pop(0)
        if isinstance(s, bytes):
            return s
        return bytes((TRANSFER_STATUS_RESPONSE, s, 0))

def test_recording() -> None:
    t = RecordingTransport(fail=(17,))
    assert t.write_register(16, 0x4f)
    assert not t.write_register(17, 0x4f)
    assert t.writes == [(16, 0x4f), (17, 0x4f)]
    assert t.failed == [17]
    assert t.image.written(16) and not t.image.written(17)
    try:
        check(t)
        assert False
    except TransportFailure as e:
        assert 'R17' in str(e)

def test_cp2112() -> None:
    fake = FakeUSB([STATUS_BUSY, STATUS_COMPLETE, STATUS_ERROR])
    bridge = CP2112(fake, 0x60) # type: ignore
    assert len(fake.control) == 1
    request, report = fake.control[0][2], fake.control[0][3]
    assert request == 0x0306
    assert len(report) == 14
    assert report[:5] == bytes((0x06, 0x00, 0x06, 0x1a, 0x80))
    assert bridge.write_register(16, 0x4f)
    assert fake.written[0] == bytes((0x14, 0xc0, 2, 16, 0x4f))
    assert fake.written[1] == bytes((0x15, 1))
    assert not bridge.write_register(17, 0x4f)
    assert bridge.failed == [17]

def test_cp2112_other_reports() -> None:
    # A stream of reports that are not transfer status gives up.
    other = bytes((0x17, 0, 0))
    fake = FakeUSB([other] * 3)
    bridge = CP2112(fake, 0x60, polls=3) # type: ignore
    assert bridge.status() == STATUS_ERROR
    assert fake.statuses == []
    fake.statuses = [other, STATUS_COMPLETE]
    assert bridge.write_register(16, 0x4f)
    assert bridge.failed == []
