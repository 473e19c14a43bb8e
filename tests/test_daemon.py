import pytest

from hifiwake import daemon
from hifiwake.actuator import Actuator
from hifiwake.capture import CaptureError
from hifiwake.daemon import (ConfigurationError, Monitor, configure,
                             create_app, parse_duration)
from hifiwake.driver import Endpoint

from conftest import FakeTransport

RATE = 8192
LOUD = [71, -71] * (RATE // 2)
QUIET = [0] * RATE


@pytest.fixture
def settings(tmp_path):
    return configure(['--config', str(tmp_path / 'missing.conf'),
                      '--amps', '10.0.0.5', '--playing', '7',
                      '--idle', '300', '--threshold', '1000'])


def feed_seconds(monitor, second, count):
    for _ in range(count):
        for sample in second:
            monitor.feed(sample)


def test_music_then_silence(settings):
    transport = FakeTransport()
    actuator = Actuator([Endpoint('amp1', '10.0.0.5', transport)])
    monitor = Monitor.from_settings(settings, actuator)

    feed_seconds(monitor, LOUD, 7)
    assert actuator.wait(5)
    assert transport.sent == ['ZMON', 'PWON']

    feed_seconds(monitor, QUIET, 1)
    assert actuator.wait(5)
    assert monitor.classifier.not_playing_count == 1
    assert transport.sent == ['ZMON', 'PWON']

    feed_seconds(monitor, QUIET, 298)
    assert actuator.wait(5)
    assert transport.sent == ['ZMON', 'PWON']

    feed_seconds(monitor, QUIET, 2)
    assert actuator.wait(5)
    assert transport.sent == ['ZMON', 'PWON', 'ZMOFF', 'PWSTANDBY']
    assert len(transport.connects) == 2
    assert monitor.status()['devices']['amp1']['power'] == 'OFF'


def test_dry_run_decides_without_sending(settings):
    transport = FakeTransport()
    actuator = Actuator([Endpoint('amp1', '10.0.0.5', transport)],
                        dry_run=True)
    monitor = Monitor.from_settings(settings, actuator)
    feed_seconds(monitor, LOUD, 7)
    assert actuator.wait(5)
    assert transport.sent == []
    assert actuator.registry.is_confirmed('amp1', True)


def test_feed_returns_verdict_on_ticks_only(settings):
    actuator = Actuator([Endpoint('amp1', 'a', FakeTransport())])
    monitor = Monitor.from_settings(settings, actuator)
    verdicts = [monitor.feed(sample) for sample in LOUD * 7]
    assert verdicts.count(True) == 1
    assert verdicts[-1] is True
    assert monitor.classifier.ticks == 7


def test_run_stops_on_capture_error(settings):
    actuator = Actuator([Endpoint('amp1', 'a', FakeTransport())])
    monitor = Monitor.from_settings(settings, actuator)

    def samples():
        yield from QUIET
        raise CaptureError('end of stream')

    with pytest.raises(CaptureError):
        monitor.run(samples())
    assert monitor.classifier.ticks == 1


@pytest.mark.parametrize('value, seconds', [
    ('300', 300), ('300s', 300), ('5m', 300), ('1h', 3600), (7, 7),
    ('5m0s', 300), ('1m30s', 90), ('1h30m', 5400), ('1.5m', 90)])
def test_parse_duration(value, seconds):
    assert parse_duration(value) == seconds


@pytest.mark.parametrize('value', ['', 'five', '0', '0.2s', '5x', 'm5',
                                   '1m 30s'])
def test_parse_duration_invalid(value):
    with pytest.raises(ConfigurationError):
        parse_duration(value)


def test_defaults(settings):
    assert settings.backend == 'rec'
    assert settings.sample_rate == 8192
    assert settings.threshold == 1000
    assert [endpoint.address for endpoint in settings.endpoints] == \
        ['10.0.0.5']
    assert not settings.dry_run


def test_threshold_depends_on_backend(tmp_path):
    config = str(tmp_path / 'missing.conf')
    rec = configure(['--config', config, '--amps', 'a'])
    arecord = configure(['--config', config, '--amps', 'a',
                         '--backend', 'arecord'])
    assert rec.threshold == daemon.BACKEND_THRESHOLDS['rec']
    assert arecord.threshold == daemon.BACKEND_THRESHOLDS['arecord']
    assert rec.idle == 300


def test_config_file(tmp_path):
    path = tmp_path / 'hifiwaked.conf'
    path.write_text('[DEFAULT]\n'
                    'amps = denon://10.0.0.5:23, relay:PA9\n'
                    'idle = 10m\n'
                    'dry_run = yes\n'
                    'threshold = 1500\n')
    settings = configure(['--config', str(path)])
    assert [endpoint.transport.kind for endpoint in settings.endpoints] == \
        ['denon', 'relay']
    assert settings.idle == 600
    assert settings.dry_run
    assert settings.threshold == 1500
    # command line wins over the file
    assert configure(['--config', str(path),
                      '--idle', '60']).idle == 60


@pytest.mark.parametrize('args', [
    [],
    ['--amps', ' , '],
    ['--amps', 'a,a'],
    ['--amps', 'relay:'],
    ['--amps', 'a', '--threshold', '-5'],
    ['--amps', 'a', '--idle', 'soon'],
    ['--amps', 'a', '--http', 'localhost'],
])
def test_invalid_configuration(tmp_path, args):
    with pytest.raises(ConfigurationError):
        configure(['--config', str(tmp_path / 'missing.conf')] + args)


def test_main_reports_configuration_error(tmp_path, capsys):
    assert daemon.main(['--config', str(tmp_path / 'missing.conf')]) == 2
    assert 'no amplifiers' in capsys.readouterr().err


def test_main_exits_when_capture_fails(tmp_path, monkeypatch):
    def start_capture(*args):
        raise CaptureError('rec not found')
    monkeypatch.setattr(daemon, 'start_capture', start_capture)
    assert daemon.main(['--config', str(tmp_path / 'missing.conf'),
                        '--amps', '10.0.0.5', '--dry-run']) == 1


def test_status_api(settings):
    actuator = Actuator([Endpoint('amp1', 'a', FakeTransport())])
    monitor = Monitor.from_settings(settings, actuator)
    feed_seconds(monitor, LOUD, 7)
    assert actuator.wait(5)
    client = create_app(monitor).test_client()

    status = client.get('/json').get_json()
    assert status['classifier']['consecutive_playing'] == 7
    assert status['desired_power'] == 'ON'
    assert status['devices']['amp1'] == dict(power='ON', authoritative=True,
                                             in_flight=False)

    assert client.get('/devices').get_json()['amp1']['power'] == 'ON'
    page = client.get('/').get_data(as_text=True)
    assert 'amp1 is ON' in page


def test_command_line_turns_off_config_flags(tmp_path):
    path = tmp_path / 'hifiwaked.conf'
    path.write_text('[DEFAULT]\n'
                    'amps = 10.0.0.5\n'
                    'dry_run = yes\n'
                    'verbose = yes\n')
    settings = configure(['--config', str(path), '--no-dry-run',
                          '--no-verbose'])
    assert not settings.dry_run
    assert not settings.verbose
    assert configure(['--config', str(path)]).dry_run
