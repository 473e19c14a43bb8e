# -*- coding: utf-8 -*-
"""Signal energy estimation for the silence detector.

The sound card input is sampled continuously; the samples go through
a fixed-size ring buffer holding one second of audio. Every time the
write cursor wraps around, a variance (power) figure is computed
for the whole window and passed on to the playback classifier.
"""


class SampleWindow:
    """Ring buffer of the most recent signed 16-bit samples.

    The buffer is full-size and zero-filled from the start, so before
    the first wrap the zeros count towards the mean like real samples.
    The variance thresholds are calibrated against this behaviour.
    """
    def __init__(self, capacity):
        if capacity < 1:
            raise ValueError('Window capacity must be a positive number '
                             'of samples, got %r' % capacity)
        self.capacity = capacity
        self.cursor = 0
        self.total = 0
        self._samples = [0] * capacity
        self._wrapped = False

    def add(self, sample):
        """Store a sample, evicting the oldest one.
        Returns True if the window has just been traversed."""
        # running sum must always match the window contents
        self.total += sample - self._samples[self.cursor]
        self._samples[self.cursor] = sample
        self.cursor += 1
        self._wrapped = self.cursor == self.capacity
        if self._wrapped:
            self.cursor = 0
        return self._wrapped

    @property
    def ready(self):
        """True right after the add that completed a traversal of the ring"""
        return self._wrapped

    def samples(self):
        """Window contents, oldest first"""
        return self._samples[self.cursor:] + self._samples[:self.cursor]

    def mean(self):
        """Mean amplitude over the whole window"""
        return self.total / self.capacity

    def variance(self):
        """Mean squared absolute deviation from the window mean."""
        mean = self.mean()
        return sum(abs(mean - sample) ** 2
                   for sample in self._samples) / self.capacity
