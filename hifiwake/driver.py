# -*- coding: utf-8 -*-
"""Amplifier control backends for hifiwake.

Two kinds of endpoints can be switched:
    Denon AV receivers, controlled over their telnet-style network
    protocol (commands terminated with a carriage return, port 23),
    power relays on a switchable PDU, driven from a GPIO line of
    an Orange Pi or a regular Raspberry Pi.

Every transport offers the same three operations: connect, send a
command token, close. Any of them can raise TransportError.
"""
import socket
import threading
from collections import namedtuple

DENON_PORT = 23

Endpoint = namedtuple('Endpoint', 'name address transport')


class TransportError(Exception):
    """Connecting to the device or sending a command failed"""


class AutoControlDisabled(TransportError):
    """Exception raised when trying to turn the device on or off
    if the equipment is switched OFF or ON manually.
    """


class DenonTransport:
    """Network control of a Denon AV receiver.
    The address is a host:port string; the port defaults to 23."""
    kind = 'denon'
    power_on_commands = ('ZMON', 'PWON')
    standby_commands = ('ZMOFF', 'PWSTANDBY')
    ping_command = 'PW?'

    def __init__(self, timeout=3.0, reply_timeout=0.2):
        self.timeout = timeout
        self.reply_timeout = reply_timeout

    def commands(self, state):
        """Command sequence for the desired power state"""
        return self.power_on_commands if state else self.standby_commands

    def connect(self, address):
        """Open a connection to the receiver"""
        host, _, port = address.rpartition(':')
        if not host:
            host, port = port, DENON_PORT
        try:
            return socket.create_connection((host, int(port)),
                                            timeout=self.timeout)
        except (OSError, ValueError) as exc:
            raise TransportError('cannot connect to %s: %s'
                                 % (address, exc)) from exc

    def send(self, conn, command):
        """Send a command and drain whatever the receiver answers.
        The receiver does not always reply (e.g. PWON when already on),
        so a missing reply is not an error."""
        try:
            conn.sendall(command.encode('ascii') + b'\r')
        except OSError as exc:
            raise TransportError('sending %r failed: %s'
                                 % (command, exc)) from exc
        conn.settimeout(self.reply_timeout)
        try:
            reply = conn.recv(1024)
        except socket.timeout:
            return ''
        except OSError as exc:
            raise TransportError('reading reply to %r failed: %s'
                                 % (command, exc)) from exc
        finally:
            conn.settimeout(self.timeout)
        return reply.decode('ascii', errors='replace').strip()

    def close(self, conn):
        """Close the connection"""
        conn.close()


def load_gpio():
    """Import and set up the GPIO library for the platform."""
    try:
        # use SUNXI as it gives the most predictable results
        import OPi.GPIO as GPIO
        GPIO.setmode(GPIO.SUNXI)
    except ImportError:
        # use BCM as it is the most conventional scheme on a RPi
        import RPi.GPIO as GPIO
        GPIO.setmode(GPIO.BCM)
    return GPIO


class RelayTransport:
    """A power relay switched by a GPIO output.

    The address is the output channel (e.g. PA9 on an Orange Pi).
    If auto_mode_in is set, that input is checked before switching:
    the PDU reports there whether it is in automatic control mode,
    and in manual mode sending the commands to it won't do anything.
    An output is set up on its first switching command, already in the
    commanded state, so the relay never goes through an unwanted state.
    One transport serves all relay endpoints, from several workers.
    """
    kind = 'relay'
    power_on_commands = ('ON',)
    standby_commands = ('OFF',)
    ping_command = None

    def __init__(self, auto_mode_in=None, gpio=None):
        self.auto_mode_in = auto_mode_in
        self._gpio = gpio
        self._lock = threading.Lock()
        self._outputs = set()
        self._auto_mode_ready = False

    @property
    def gpio(self):
        """GPIO module, loaded on first use"""
        with self._lock:
            if self._gpio is None:
                self._gpio = load_gpio()
            return self._gpio

    def commands(self, state):
        """Command sequence for the desired power state"""
        return self.power_on_commands if state else self.standby_commands

    def input_setup(self):
        """Set up the auto mode input once"""
        gpio = self.gpio
        with self._lock:
            if self.auto_mode_in is not None and not self._auto_mode_ready:
                gpio.setup(self.auto_mode_in, gpio.IN)
                self._auto_mode_ready = True

    def automatic_mode(self):
        """Checks if the device is in automatic control mode"""
        if self.auto_mode_in is None:
            return True
        return bool(self.gpio.input(self.auto_mode_in))

    def connect(self, address):
        """Check that the PDU is in automatic mode; the output
        itself is left untouched"""
        try:
            self.input_setup()
            automatic = self.automatic_mode()
        except (RuntimeError, ValueError) as exc:
            raise TransportError('cannot read GPIO %s: %s'
                                 % (self.auto_mode_in, exc)) from exc
        if not automatic:
            raise AutoControlDisabled('relay %s is in manual control mode'
                                      % address)
        return address

    def send(self, channel, command):
        """Switch the relay ON or OFF"""
        if command not in ('ON', 'OFF'):
            raise TransportError('unknown relay command %r' % command)
        gpio = self.gpio
        state = gpio.HIGH if command == 'ON' else gpio.LOW
        try:
            with self._lock:
                if channel in self._outputs:
                    gpio.output(channel, state)
                else:
                    gpio.setup(channel, gpio.OUT, initial=state)
                    self._outputs.add(channel)
        except (RuntimeError, ValueError) as exc:
            raise TransportError('cannot switch GPIO %s: %s'
                                 % (channel, exc)) from exc
        return command

    def close(self, channel):
        """Nothing to release; the relay keeps its state"""


def parse_device(device, denon=None, relay=None):
    """Make an Endpoint from a configured device string:
        relay:PA9 - GPIO relay on channel PA9,
        denon://10.0.0.5:23 or 10.0.0.5[:23] - Denon receiver.
    """
    device = device.strip()
    if not device:
        raise ValueError('empty device address')
    if device.startswith('relay:'):
        channel = device[len('relay:'):]
        if not channel:
            raise ValueError('relay needs a GPIO channel: %r' % device)
        return Endpoint(device, channel, relay or RelayTransport())
    address = device
    if device.startswith('denon://'):
        address = device[len('denon://'):]
    if not address:
        raise ValueError('Denon device needs a host: %r' % device)
    return Endpoint(device, address, denon or DenonTransport())
