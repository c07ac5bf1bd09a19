
from .transport import CP2112, CP2112_PID, CP2112_VID, RecordingTransport, \
    Transport

import argparse, sys
import usb.core # pyright: ignore

from usb.core import Device as USBDevice # pyright: ignore

# Default I2C address of the clock chip.
I2C_ADDRESS = 0x60

class Device:
    args: argparse.Namespace | None

    usb: USBDevice | None = None
    transport: Transport | None = None

    def __init__(self, args: argparse.Namespace | None = None):
        self.args = args

    def option(self, name: str, default):
        if self.args is None:
            return default
        value = getattr(self.args, name, None)
        return default if value is None else value

    def get_usb(self) -> USBDevice:
        if self.usb is not None:
            return self.usb

        serial = self.option('serial', None)
        opts = {}
        if serial is not None:
            opts['serial_number'] = serial
        gen = usb.core.find(True, idVendor=CP2112_VID, idProduct=CP2112_PID,
                            **opts)
        u = list(gen) # type: ignore
        if len(u) == 0:
            print('No CP2112 USB to I2C bridge found', file=sys.stderr)
            sys.exit(1)
        if len(u) > 1:
            print('Multiple CP2112 USB to I2C bridges found.',
                  file=sys.stderr)
            print('You may select one with the --serial option.',
                  file=sys.stderr)
            print('Available serial numbers are:', file=sys.stderr)
            for d in u:
                print(f'    {d.serial_number}', file=sys.stderr)
            sys.exit(1)
        assert isinstance(u[0], USBDevice)
        self.usb = u[0]
        return self.usb

    def get_transport(self) -> Transport:
        if self.transport is not None:
            return self.transport

        verbose = bool(self.option('verbose', False))
        if self.option('dry_run', False):
            self.transport = RecordingTransport(verbose)
        else:
            self.transport = CP2112(self.get_usb(),
                                    self.option('address', I2C_ADDRESS),
                                    verbose = verbose)
        return self.transport

def test_dry_run() -> None:
    args = argparse.Namespace(dry_run=True, verbose=False, address=None)
    device = Device(args)
    t = device.get_transport()
    assert isinstance(t, RecordingTransport)
    assert device.get_transport() is t
    assert Device().option('address', I2C_ADDRESS) == 0x60
