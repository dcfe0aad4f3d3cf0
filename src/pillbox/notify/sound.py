"""提示音

运行时合成一段 880Hz 正弦波 (约 0.6 秒，指数包络: 10ms 内升到 0.2，0.6s 时衰减到 0.0001)，
不依赖任何音频文件。播放依赖可选的 audio 依赖组 (numpy + pygame)。
音频子系统的任何错误都只记录 TRACE 日志，不会影响提醒流程。
"""

from __future__ import annotations

import os

from pillbox.logger import logger

SAMPLE_RATE = 44100
FREQUENCY_HZ = 880.0
DURATION_S = 0.65
PEAK_GAIN = 0.2
FLOOR_GAIN = 0.0001
ATTACK_S = 0.01
RELEASE_AT_S = 0.6

_sound = None  # 缓存的 pygame.mixer.Sound


def build_envelope(n_samples: int, sample_rate: int = SAMPLE_RATE):
    """指数增益包络: FLOOR -> PEAK (ATTACK_S) -> FLOOR (RELEASE_AT_S)，之后保持静音"""
    import numpy as np

    t = np.arange(n_samples) / sample_rate
    gain = np.full(n_samples, FLOOR_GAIN)

    attack = t <= ATTACK_S
    gain[attack] = FLOOR_GAIN * (PEAK_GAIN / FLOOR_GAIN) ** (t[attack] / ATTACK_S)

    release = (t > ATTACK_S) & (t <= RELEASE_AT_S)
    progress = (t[release] - ATTACK_S) / (RELEASE_AT_S - ATTACK_S)
    gain[release] = PEAK_GAIN * (FLOOR_GAIN / PEAK_GAIN) ** progress
    return gain


def build_tone(sample_rate: int = SAMPLE_RATE):
    """生成 16 位立体声 PCM 数组 (形状: [n, 2])"""
    import numpy as np

    n_samples = int(DURATION_S * sample_rate)
    t = np.arange(n_samples) / sample_rate
    wave = np.sin(2 * np.pi * FREQUENCY_HZ * t) * build_envelope(n_samples, sample_rate)
    pcm = (wave * 32767).astype(np.int16)
    return np.repeat(pcm.reshape(n_samples, 1), 2, axis=1)


def _get_sound():
    global _sound
    if _sound is None:
        os.environ.setdefault("PYGAME_HIDE_SUPPORT_PROMPT", "1")
        import pygame

        if not pygame.mixer.get_init():
            pygame.mixer.init(frequency=SAMPLE_RATE, size=-16, channels=2, buffer=512)
        _sound = pygame.sndarray.make_sound(build_tone())
    return _sound


def beep() -> bool:
    """播放提示音，失败时静默返回 False"""
    try:
        _get_sound().play()
        return True
    except Exception as e:
        logger.trace(f"提示音播放失败: {e}")
        return False


__all__ = ["beep", "build_tone", "build_envelope"]
