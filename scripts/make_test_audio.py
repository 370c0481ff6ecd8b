"""Script to generate synthetic pulsed recordings and a matching pulse table."""

import argparse
import csv
from pathlib import Path

import numpy as np
import soundfile as sf


def generate_pulse_recording(
    output_path: Path,
    duration: float = 60.0,
    sample_rate: int = 16000,
    noise_level: float = 0.01,
    first_pulse_s: float = 2.0,
    pulse_interval_ms: float = 5000.0,
    pulse_freq: float = 2000.0,
    pulse_duration: float = 0.05,
    seed: int = 0,
) -> list[float]:
    """Generate white noise with tone-burst pulses on a constant schedule.

    Args:
        output_path: Output WAV file path.
        duration: Duration in seconds.
        sample_rate: Sample rate in Hz.
        noise_level: Standard deviation of the background noise.
        first_pulse_s: Time of the first pulse in seconds.
        pulse_interval_ms: Interval between pulses in milliseconds.
        pulse_freq: Tone frequency of the pulses in Hz.
        pulse_duration: Pulse length in seconds.
        seed: Random seed of the noise.

    Returns:
        Pulse times in seconds.
    """
    rng = np.random.default_rng(seed)
    n_samples = int(sample_rate * duration)
    audio = rng.normal(0.0, noise_level, n_samples)

    pulse_len = int(pulse_duration * sample_rate)
    t = np.arange(pulse_len) / sample_rate
    # Hann-shaped tone burst
    burst = np.sin(2 * np.pi * pulse_freq * t) * np.hanning(pulse_len) * 0.5

    times: list[float] = []
    pulse = first_pulse_s
    while pulse < duration:
        idx = int(pulse * sample_rate)
        if idx + pulse_len < n_samples:
            audio[idx : idx + pulse_len] += burst
            times.append(pulse)
        pulse += pulse_interval_ms / 1000.0

    output_path.parent.mkdir(parents=True, exist_ok=True)
    sf.write(output_path, audio, sample_rate)
    print(f"Generated pulse recording: {output_path} ({duration}s, {len(times)} pulses)")
    return times


def write_pulse_table(
    table_path: Path, audio_path: Path, first_pulse_s: float, pulse_interval_ms: float
) -> None:
    """Write a one-line pulse table for a generated recording."""
    table_path.parent.mkdir(parents=True, exist_ok=True)
    with open(table_path, "w", encoding="utf-8", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(["audioname", "firstpulse_s", "pulseinterval_ms"])
        writer.writerow([audio_path.name, first_pulse_s, pulse_interval_ms])


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Generate a synthetic pulsed recording")
    parser.add_argument("output", type=Path, help="Output WAV file path")
    parser.add_argument("--duration", type=float, default=60.0, help="Duration in seconds")
    parser.add_argument("--sample-rate", type=int, default=16000, help="Sample rate in Hz")
    parser.add_argument(
        "--noise-level", type=float, default=0.01, help="Background noise standard deviation"
    )
    parser.add_argument("--first-pulse", type=float, default=2.0, help="First pulse (seconds)")
    parser.add_argument(
        "--interval-ms", type=float, default=5000.0, help="Pulse interval (milliseconds)"
    )
    parser.add_argument("--pulse-table", type=Path, help="Also write a pulse table CSV here")
    parser.add_argument("--seed", type=int, default=0, help="Random seed")

    args = parser.parse_args()
    generate_pulse_recording(
        args.output,
        duration=args.duration,
        sample_rate=args.sample_rate,
        noise_level=args.noise_level,
        first_pulse_s=args.first_pulse,
        pulse_interval_ms=args.interval_ms,
        seed=args.seed,
    )
    if args.pulse_table is not None:
        write_pulse_table(args.pulse_table, args.output, args.first_pulse, args.interval_ms)


if __name__ == "__main__":
    main()
