# -*- coding: utf-8 -*-
"""hifiwake - a mini-daemon for switching hi-fi amplifiers on and off
depending on whether music is playing.

The sound card input is wired to the audio output of a preamplifier/mixer.
When a signal is present for a few seconds, the amplifiers are powered on;
if no signal is present for a certain time, they go to standby.
Amplifiers are Denon AV receivers controlled over the network,
or any equipment behind a GPIO-switched power relay.
"""
