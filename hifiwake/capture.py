# -*- coding: utf-8 -*-
"""Sound card input: raw signed 16-bit little-endian mono samples
read from an external recording program.

Two programs are supported: rec (from sox) and arecord (from alsa-utils).
Without audio there is nothing to decide on, so any failure here
is fatal and raises CaptureError.
"""
import logging
import struct
import subprocess
import threading
import time
from collections import deque

LOG = logging.getLogger('hifiwaked')
BACKENDS = ('rec', 'arecord')
SAMPLE = struct.Struct('<h')


class CaptureError(Exception):
    """The recording program cannot be started or has stopped"""


def capture_command(backend, sample_rate, alsa_device=None):
    """Command line of the recording program"""
    if backend == 'rec':
        return ['rec', '-q',
                '-t', 'raw',
                '--endian', 'little',
                '-r', str(sample_rate),
                '-e', 'signed',
                '-b', '16',
                '-c', '1',
                '-']
    if backend == 'arecord':
        command = ['arecord', '-q',
                   '-f', 'S16_LE',
                   '-r', str(sample_rate),
                   '-c', '1',
                   '-t', 'raw']
        if alsa_device:
            command[2:2] = ['-D', alsa_device]
        return command
    raise ValueError('Unknown capture backend: %r' % backend)


class StderrLogger(threading.Thread):
    """Reads the recorder's stderr for as long as it runs.
    An unread pipe fills up and stalls the recorder, so every line
    is consumed and logged; the last few are kept for error messages."""
    def __init__(self, program, stream, keep=20):
        super().__init__(name='%s-stderr' % program, daemon=True)
        self.program = program
        self.stream = stream
        self.lines = deque(maxlen=keep)

    def run(self):
        for line in self.stream:
            text = line.decode(errors='ignore').strip()
            if text:
                self.lines.append(text)
                LOG.warning('%s: %s', self.program, text)

    def message(self):
        """Recent stderr output as one string"""
        return '; '.join(self.lines)


def start_capture(backend, sample_rate, alsa_device=None):
    """Start the recording program, return the Popen object"""
    command = capture_command(backend, sample_rate, alsa_device)
    LOG.info('Starting audio capture: %s', ' '.join(command))
    try:
        process = subprocess.Popen(command, stdout=subprocess.PIPE,
                                   stderr=subprocess.PIPE)
    except OSError as exc:
        raise CaptureError('Error starting %s: %s' % (backend, exc)) from exc
    stderr_logger = StderrLogger(backend, process.stderr)
    stderr_logger.start()
    # give it a moment to fail on a busy or missing device
    time.sleep(0.1)
    if process.poll() is not None:
        stderr_logger.join(timeout=1)
        raise CaptureError('%s exited with status %s: %s'
                           % (backend, process.returncode,
                              stderr_logger.message()))
    return process


def stop_capture(process):
    """Terminate the recording program"""
    if process.poll() is None:
        process.terminate()
        try:
            process.wait(timeout=2)
        except subprocess.TimeoutExpired:
            process.kill()


def read_samples(stream, chunk_size=4096):
    """Yield samples from a binary stream, in order.
    End of stream is an error: the recorder is not supposed to stop."""
    leftover = b''
    while True:
        try:
            data = stream.read(chunk_size)
        except OSError as exc:
            raise CaptureError('error reading next sample: %s' % exc) from exc
        if not data:
            raise CaptureError('error reading next sample: end of stream')
        data = leftover + data
        usable = len(data) - len(data) % SAMPLE.size
        leftover = data[usable:]
        for (sample,) in SAMPLE.iter_unpack(data[:usable]):
            yield sample
