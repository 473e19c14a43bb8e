# -*- coding: utf-8 -*-
"""Switching the amplifiers on and off.

The sampling loop must never wait for the network, so every device is
switched in a worker thread. The registry remembers what each device was
last successfully set to; a device already in the desired state is left
alone, and a failed attempt is simply repeated on the next decision.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait

from .driver import TransportError

LOG = logging.getLogger('hifiwaked')


def state_name(state):
    """Human readable power state"""
    if state is None:
        return 'UNKNOWN'
    return 'ON' if state else 'OFF'


class DeviceState:
    """Last commanded power state of a device.

    on - True/False, or None if never set successfully
    authoritative - whether the last command attempt succeeded
    in_flight - a worker is switching this device right now
    """
    def __init__(self, on=None, authoritative=False, in_flight=False):
        self.on = on
        self.authoritative = authoritative
        self.in_flight = in_flight

    def __repr__(self):
        return ('DeviceState(on=%r, authoritative=%r, in_flight=%r)'
                % (self.on, self.authoritative, self.in_flight))

    def as_dict(self):
        """State for the JSON status page"""
        return dict(power=state_name(self.on),
                    authoritative=self.authoritative,
                    in_flight=self.in_flight)


class DeviceRegistry:
    """Thread-safe map of device name to DeviceState.

    All reads and writes go through one lock: the sampling thread checks
    the states while the workers update them. At most one worker per
    device may be active; begin() claims the device and finish() releases
    it while recording the outcome.
    """
    def __init__(self):
        self._lock = threading.Lock()
        self._states = {}

    def get(self, name):
        """Copy of the device's state (entry created on first use)"""
        with self._lock:
            state = self._states.setdefault(name, DeviceState())
            return DeviceState(state.on, state.authoritative, state.in_flight)

    def is_confirmed(self, name, on):
        """Is the device known to be in the given state?"""
        with self._lock:
            state = self._states.setdefault(name, DeviceState())
            return state.authoritative and state.on == on

    def begin(self, name, on):
        """Claim the device for a worker switching it to the given state.
        Returns False if another worker is still busy with it, or if
        the device is already known to be in that state."""
        with self._lock:
            state = self._states.setdefault(name, DeviceState())
            if state.in_flight:
                return False
            if state.authoritative and state.on == on:
                return False
            state.in_flight = True
            return True

    def finish(self, name, on, success):
        """Release the device and record the outcome of the attempt.
        On failure the previous state stays, marked as not authoritative,
        so that the next decision tries again."""
        with self._lock:
            state = self._states.setdefault(name, DeviceState())
            state.in_flight = False
            if success:
                state.on = on
                state.authoritative = True
            else:
                state.authoritative = False

    def snapshot(self):
        """All device states as dicts"""
        with self._lock:
            return {name: state.as_dict()
                    for name, state in self._states.items()}


class Actuator:
    """Drives all configured endpoints to the desired power state.

    In dry run mode the devices are connected to, but no commands are
    sent; the registry is updated as if they had been.
    """
    def __init__(self, endpoints, dry_run=False, registry=None,
                 executor=None):
        self.endpoints = list(endpoints)
        self.dry_run = dry_run
        self.registry = registry or DeviceRegistry()
        for endpoint in self.endpoints:
            # register the devices so that the status page lists them
            self.registry.get(endpoint.name)
        # one worker per device is enough: a device is never switched
        # by two workers at the same time
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max(len(self.endpoints), 1),
            thread_name_prefix='actuator')
        self._pending = set()
        self._pending_lock = threading.Lock()

    def set_desired_state(self, on):
        """Start switching every device that is not known to be
        in the desired state. Does not wait for the result.
        Returns the list of futures started."""
        todo = [endpoint for endpoint in self.endpoints
                if not self.registry.is_confirmed(endpoint.name, on)]
        if not todo:
            # all devices in the correct state; nothing to log
            return []
        LOG.info('turning amps %s', state_name(on))
        futures = []
        for endpoint in todo:
            if not self.registry.begin(endpoint.name, on):
                LOG.debug('%s: busy or already %s',
                          endpoint.name, state_name(on))
                continue
            futures.append(self._submit(endpoint, on))
        return futures

    def _submit(self, endpoint, on):
        """Run actuate() in a worker, keeping track of the future"""
        future = self._executor.submit(self.actuate, endpoint, on)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._task_done)
        return future

    def _task_done(self, future):
        with self._pending_lock:
            self._pending.discard(future)
        if not future.cancelled() and future.exception() is not None:
            LOG.error('Actuator task crashed', exc_info=future.exception())

    def actuate(self, endpoint, on):
        """Switch one device. The caller must have claimed it with
        registry.begin(); it is released here whatever happens."""
        success = False
        try:
            success = self.transmit(endpoint, on)
        finally:
            self.registry.finish(endpoint.name, on, success)
        return success

    def transmit(self, endpoint, on):
        """Connect, send the command sequence in order, disconnect.
        Stops at the first failing command. Returns True on success."""
        transport = endpoint.transport
        LOG.info('%s: setting power %s', endpoint.name, state_name(on))
        try:
            conn = transport.connect(endpoint.address)
        except TransportError as exc:
            LOG.warning('%s: connection failed: %s', endpoint.name, exc)
            return False
        try:
            for command in transport.commands(on):
                if self.dry_run:
                    LOG.info('%s: dry run, not sending %r',
                             endpoint.name, command)
                    continue
                LOG.info('%s: sending command %r', endpoint.name, command)
                try:
                    transport.send(conn, command)
                except TransportError as exc:
                    LOG.warning('%s: sending command %r failed: %s',
                                endpoint.name, command, exc)
                    return False
        finally:
            transport.close(conn)
        LOG.info('%s: power successfully set to %s',
                 endpoint.name, state_name(on))
        return True

    def ping(self, endpoint):
        """Check that the device answers. Returns True if it does."""
        transport = endpoint.transport
        try:
            conn = transport.connect(endpoint.address)
        except TransportError as exc:
            LOG.warning('%s: not reachable: %s', endpoint.name, exc)
            return False
        try:
            if transport.ping_command:
                reply = transport.send(conn, transport.ping_command)
                LOG.info('%s: %s -> %r', endpoint.name,
                         transport.ping_command, reply)
        except TransportError as exc:
            LOG.warning('%s: ping failed: %s', endpoint.name, exc)
            return False
        finally:
            transport.close(conn)
        return True

    def wait(self, timeout=None):
        """Block until all started workers are done.
        Returns True if nothing is pending any more."""
        with self._pending_lock:
            pending = list(self._pending)
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_workers=True):
        """Stop accepting work and release the worker threads"""
        self._executor.shutdown(wait=wait_for_workers)
