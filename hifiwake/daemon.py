#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""hifiwaked - turns the hi-fi amplifiers on when music is playing
and off after a period of silence.

The daemon listens to the sound card input (wired to the output of
a preamplifier/mixer) through rec or arecord. The signal variance is
computed for every second of audio. After a few loud seconds in a row
the amplifiers are switched on; after the idle time has passed without
music they are put to standby. Both Denon AV receivers (over the network)
and GPIO-switched power relays can be controlled.

Settings are read from /etc/hifiwaked.conf ([DEFAULT] section) and can be
overridden on the command line. An optional web API reports the current
status as JSON.
"""
import argparse
import atexit
import logging
import re
import signal
import sys
import threading
from collections import namedtuple
from configparser import ConfigParser, DEFAULTSECT

from flask import Flask, jsonify

from .actuator import Actuator, state_name
from .capture import (BACKENDS, CaptureError, read_samples, start_capture,
                      stop_capture)
from .classifier import PlaybackClassifier
from .driver import DenonTransport, RelayTransport, parse_device
from .energy import SampleWindow

LOG = logging.getLogger('hifiwaked')
CONFIG_PATH = '/etc/hifiwaked.conf'
CFG_DEFAULTS = dict(backend='rec', alsa_device='', sample_rate='8192',
                    idle='5m', playing='7s', threshold='', amps='',
                    dry_run='no', verbose='no', journal='no', http='',
                    auto_mode_in='', timeout='3')
# different capture programs give different noise floors
BACKEND_THRESHOLDS = dict(rec=1000, arecord=2500)
DURATION_UNITS = dict(s=1, m=60, h=3600)
DURATION_NUMBER = re.compile(r'\d+(?:\.\d+)?')
DURATION_PART = re.compile(r'(\d+(?:\.\d+)?)([hms])')
DURATION_FORMAT = re.compile(r'(?:\d+(?:\.\d+)?[hms])+')

Settings = namedtuple('Settings', ('backend alsa_device sample_rate idle '
                                   'playing threshold endpoints dry_run '
                                   'verbose journal http check'))


class ConfigurationError(Exception):
    """Invalid or missing settings"""


def parse_duration(value):
    """Duration in whole seconds: 300, 300s, 5m, 1h30m, 5m0s"""
    text = str(value).strip().lower()
    if DURATION_NUMBER.fullmatch(text):
        seconds = float(text)
    elif DURATION_FORMAT.fullmatch(text):
        seconds = sum(float(number) * DURATION_UNITS[unit]
                      for number, unit in DURATION_PART.findall(text))
    else:
        raise ConfigurationError('invalid duration: %r' % value)
    if seconds < 1:
        raise ConfigurationError('duration must be at least 1s: %r' % value)
    return int(round(seconds))


def read_config(paths=(CONFIG_PATH,)):
    """Read the configuration files; missing files are skipped"""
    config = ConfigParser(defaults=CFG_DEFAULTS)
    config.read(paths)
    return config


def build_parser(config):
    """Command line options, with defaults taken from the config file"""
    def flag(option):
        return config.getboolean(DEFAULTSECT, option)

    defaults = config.defaults()
    parser = argparse.ArgumentParser(
        prog='hifiwaked',
        description='Switch the amplifiers on and off depending on '
                    'whether music is playing.')
    parser.add_argument('--config', default=CONFIG_PATH,
                        help='configuration file (default: %(default)s)')
    parser.add_argument('--amps', default=defaults.get('amps'),
                        help='comma-separated list of devices: '
                             'host[:port] or denon://host[:port] for '
                             'Denon receivers, relay:CHANNEL for GPIO relays')
    parser.add_argument('--backend', choices=BACKENDS,
                        default=defaults.get('backend'),
                        help='capture program (default: %(default)s)')
    parser.add_argument('--alsa-device', default=defaults.get('alsa_device'),
                        help='ALSA device for arecord, '
                             'e.g. plughw:CARD=Audio,DEV=0 (see arecord -L)')
    parser.add_argument('--rate', type=int,
                        default=defaults.get('sample_rate'),
                        help='sample rate in Hz (default: %(default)s)')
    parser.add_argument('--idle', default=defaults.get('idle'),
                        help='length of silence before turning off amps, '
                             'e.g. 300, 5m or 1m30s (default: %(default)s)')
    parser.add_argument('--playing', default=defaults.get('playing'),
                        help='length of music before turning on amps '
                             '(default: %(default)s)')
    parser.add_argument('--threshold', type=float,
                        default=defaults.get('threshold') or None,
                        help='variance above which audio counts as music '
                             '(default depends on the backend)')
    parser.add_argument('--http', default=defaults.get('http'),
                        help='host:port to serve the JSON status on')
    parser.add_argument('--dry-run', action=argparse.BooleanOptionalAction,
                        default=flag('dry_run'),
                        help='decide, but do not send any commands')
    parser.add_argument('--verbose', action=argparse.BooleanOptionalAction,
                        default=flag('verbose'),
                        help='log every variance figure')
    parser.add_argument('--journal', action=argparse.BooleanOptionalAction,
                        default=flag('journal'),
                        help='log to the systemd journal')
    parser.add_argument('--check', action='store_true',
                        help='ping all devices and exit')
    return parser


def build_endpoints(amps, config):
    """Parse the comma-separated device list"""
    defaults = config.defaults()
    try:
        timeout = float(defaults.get('timeout'))
    except ValueError:
        raise ConfigurationError('invalid timeout: %r'
                                 % defaults.get('timeout')) from None
    denon = DenonTransport(timeout=timeout)
    relay = RelayTransport(auto_mode_in=defaults.get('auto_mode_in') or None)
    endpoints = []
    for device in (amps or '').split(','):
        if not device.strip():
            continue
        try:
            endpoints.append(parse_device(device, denon=denon, relay=relay))
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from None
    if not endpoints:
        raise ConfigurationError('no amplifiers given (use --amps)')
    names = [endpoint.name for endpoint in endpoints]
    if len(set(names)) != len(names):
        raise ConfigurationError('duplicate devices in --amps: %s' % amps)
    return endpoints


def configure(argv=None):
    """Read the config file and the command line, validate the settings"""
    preparser = argparse.ArgumentParser(add_help=False)
    preparser.add_argument('--config', default=CONFIG_PATH)
    known, _ = preparser.parse_known_args(argv)
    config = read_config([known.config])
    try:
        options = build_parser(config).parse_args(argv)
    except ValueError as exc:
        # malformed boolean in the config file
        raise ConfigurationError(str(exc)) from None
    if options.rate < 1:
        raise ConfigurationError('sample rate must be positive')
    threshold = options.threshold
    if threshold is None:
        threshold = BACKEND_THRESHOLDS[options.backend]
    if threshold <= 0:
        raise ConfigurationError('variance threshold must be positive')
    if options.http and not options.http.rpartition(':')[2].isdigit():
        raise ConfigurationError('--http needs host:port, got %r'
                                 % options.http)
    return Settings(backend=options.backend,
                    alsa_device=options.alsa_device or None,
                    sample_rate=options.rate,
                    idle=parse_duration(options.idle),
                    playing=parse_duration(options.playing),
                    threshold=threshold,
                    endpoints=build_endpoints(options.amps, config),
                    dry_run=options.dry_run,
                    verbose=options.verbose,
                    journal=options.journal,
                    http=options.http or None,
                    check=options.check)


def journald_setup(journal=False, verbose=False):
    """Set up logging to the systemd journal or to stderr"""
    if journal:
        # systemd-python is only needed when logging to the journal
        from systemd.journal import JournalHandler
        handler = JournalHandler(SYSLOG_IDENTIFIER='hifiwaked')
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter('[%(levelname)s] %(message)s'))
    LOG.addHandler(handler)
    LOG.setLevel(logging.DEBUG if verbose else logging.INFO)


class Monitor:
    """Sample window, classifier and actuator wired together.
    feed() is called from the sampling thread for every sample."""
    def __init__(self, window, classifier, actuator):
        self.window = window
        self.classifier = classifier
        self.actuator = actuator
        self.last_verdict = None

    @classmethod
    def from_settings(cls, settings, actuator):
        """One second of audio per window"""
        window = SampleWindow(settings.sample_rate)
        classifier = PlaybackClassifier(settings.threshold,
                                        playing_threshold=settings.playing,
                                        idle_threshold=settings.idle)
        return cls(window, classifier, actuator)

    def feed(self, sample):
        """Process a sample; once per window, decide and act.
        Returns the verdict on a decision tick, None otherwise."""
        if not self.window.add(sample):
            return None
        variance = self.window.variance()
        playing = self.classifier.classify(variance)
        LOG.debug('variance = %.1f; playing = %s', variance, playing)
        verdict = self.classifier.verdict()
        if verdict is not None:
            self.last_verdict = verdict
            self.actuator.set_desired_state(verdict)
        return verdict

    def run(self, samples):
        """Main loop; ends only when the sample source fails"""
        for sample in samples:
            self.feed(sample)

    def status(self):
        """Everything the status page shows"""
        return dict(classifier=self.classifier.status(),
                    desired_power=state_name(self.last_verdict),
                    dry_run=self.actuator.dry_run,
                    devices=self.actuator.registry.snapshot())


def create_app(monitor):
    """JSON web API reporting what the daemon is doing."""
    def index():
        """Display front page"""
        status = monitor.status()
        lines = ['<h1>hifiwake</h1>',
                 '<div>Music playing: %s</div>'
                 % status['classifier']['playing'],
                 '<div>Desired power: %s</div>' % status['desired_power']]
        for name, device in sorted(status['devices'].items()):
            lines.append('<div>%s is %s</div>' % (name, device['power']))
        return '\n'.join(lines)

    def status_json():
        """Classifier counters and device states"""
        return jsonify(monitor.status())

    def devices_json():
        """Device states only"""
        return jsonify(monitor.actuator.registry.snapshot())

    app = Flask('hifiwaked')
    app.route('/')(index)
    app.route('/json')(status_json)
    app.route('/devices')(devices_json)
    return app


def webapi(monitor, address):
    """Serve the status API from a background thread"""
    host, _, port = address.rpartition(':')
    app = create_app(monitor)
    thread = threading.Thread(target=app.run, name='webapi', daemon=True,
                              kwargs=dict(host=host or '0.0.0.0',
                                          port=int(port),
                                          use_reloader=False))
    thread.start()
    return thread


def check_devices(actuator):
    """Ping every device; True if all of them answer"""
    results = [actuator.ping(endpoint) for endpoint in actuator.endpoints]
    return all(results)


def main(argv=None):
    """Main function"""
    # signal handling routine
    def signal_handler(*_):
        """Exit gracefully if SIGINT or SIGTERM received"""
        raise KeyboardInterrupt

    try:
        settings = configure(argv)
    except ConfigurationError as exc:
        sys.stderr.write('hifiwaked: %s\n' % exc)
        return 2

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
    journald_setup(settings.journal, settings.verbose)

    actuator = Actuator(settings.endpoints, dry_run=settings.dry_run)
    atexit.register(actuator.shutdown, False)
    if settings.check:
        return 0 if check_devices(actuator) else 1

    monitor = Monitor.from_settings(settings, actuator)
    LOG.info('Watching %s at %d Hz: threshold %s, on after %ds, '
             'off after %ds%s', settings.backend, settings.sample_rate,
             settings.threshold, settings.playing, settings.idle,
             ' (dry run)' if settings.dry_run else '')
    if settings.http:
        webapi(monitor, settings.http)

    try:
        process = start_capture(settings.backend, settings.sample_rate,
                                settings.alsa_device)
        atexit.register(stop_capture, process)
        monitor.run(read_samples(process.stdout))
    except CaptureError as exc:
        LOG.critical('%s', exc)
        return 1
    except KeyboardInterrupt:
        LOG.info('Exiting')
    return 0


if __name__ == '__main__':
    sys.exit(main())
