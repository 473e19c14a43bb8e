# -*- coding: utf-8 -*-
"""Playback detection with hysteresis.

Each variance figure (one per second of audio) is compared against
a threshold. Turning the amps on needs an unbroken run of loud seconds;
turning them off needs the quiet counter to build up past the idle time.
The quiet counter goes down on every loud second, so a short burst
of music pushes the power-off back instead of starting the count over.
"""


class PlaybackClassifier:
    """Debounced play/silence decisions from a stream of variance values.

    threshold - variance above which a second of audio counts as loud
    playing_threshold - loud seconds in a row needed to turn on
    idle_threshold - net quiet seconds needed to turn off
    """
    def __init__(self, threshold, playing_threshold, idle_threshold):
        if threshold <= 0:
            raise ValueError('Variance threshold must be positive')
        if playing_threshold < 1 or idle_threshold < 1:
            raise ValueError('Playing and idle thresholds must be '
                             'at least one second')
        self.threshold = threshold
        self.playing_threshold = playing_threshold
        self.idle_threshold = idle_threshold
        self.horizon = idle_threshold + playing_threshold
        self.consecutive_playing = 0
        self.not_playing_count = 0
        self.last_variance = None
        self.last_loud = None
        self.ticks = 0

    def classify(self, variance):
        """Update the counters with a new variance figure.
        Returns True if this second was loud."""
        loud = variance > self.threshold
        if loud:
            self.consecutive_playing = min(self.consecutive_playing + 1,
                                           self.horizon)
            self.not_playing_count = max(self.not_playing_count - 1, 0)
        else:
            self.consecutive_playing = 0
            self.not_playing_count = min(self.not_playing_count + 1,
                                         self.horizon)
        self.last_variance = variance
        self.last_loud = loud
        self.ticks += 1
        return loud

    def good_to_turn_on(self):
        """Music has been playing long enough"""
        return self.consecutive_playing >= self.playing_threshold

    def good_to_turn_off(self):
        """Enough net silence has accumulated"""
        return self.not_playing_count >= self.idle_threshold

    def verdict(self):
        """Desired power state: True = on, False = off,
        None = keep whatever the amps are doing now."""
        if self.good_to_turn_on():
            return True
        if self.good_to_turn_off():
            return False
        return None

    def status(self):
        """Counters snapshot for the status page"""
        return dict(threshold=self.threshold,
                    playing_threshold=self.playing_threshold,
                    idle_threshold=self.idle_threshold,
                    consecutive_playing=self.consecutive_playing,
                    not_playing_count=self.not_playing_count,
                    last_variance=self.last_variance,
                    playing=self.last_loud,
                    ticks=self.ticks)
