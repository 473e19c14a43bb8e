import threading

import pytest

from hifiwake.driver import Endpoint, TransportError


class FakeTransport:
    """Records everything sent; can be told to fail."""
    kind = 'fake'
    power_on_commands = ('ZMON', 'PWON')
    standby_commands = ('ZMOFF', 'PWSTANDBY')
    ping_command = 'PW?'

    def __init__(self, fail_connect=0, fail_command=None, gate=None):
        self.fail_connect = fail_connect
        self.fail_command = fail_command
        self.gate = gate
        self.connects = []
        self.sent = []
        self.closed = 0
        self._lock = threading.Lock()

    def commands(self, state):
        return self.power_on_commands if state else self.standby_commands

    def connect(self, address):
        if self.gate is not None:
            self.gate.wait(5)
        with self._lock:
            self.connects.append(address)
            if self.fail_connect:
                self.fail_connect -= 1
                raise TransportError('connection refused')
        return address

    def send(self, conn, command):
        with self._lock:
            if command == self.fail_command:
                raise TransportError('no reply')
            self.sent.append(command)
        return command

    def close(self, conn):
        with self._lock:
            self.closed += 1


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def endpoint(transport):
    return Endpoint('amp1', '10.0.0.5:23', transport)
