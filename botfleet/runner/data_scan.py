"""
Data availability scanner.

Runs inside the download container after the archive has been uploaded, so
it only uses the standard library. It opens every OHLCV file and reads its
first and last candle; filenames alone say nothing about the covered range.

Output is a single JSON document between the availability markers on stdout.
"""
import json
import os
import re
import sys
from datetime import datetime, timezone

START_MARKER = "===DATA_AVAILABLE_START==="
END_MARKER = "===DATA_AVAILABLE_END==="

# freqtrade names candle files BASE_QUOTE-TF.json (spot) and
# BASE_QUOTE_SETTLE-TF-futures.json / -mark.json (futures)
_CANDLE_TYPE_SUFFIX = re.compile(r"-(futures|mark|index|premiumIndex|funding_rate)$")


def parse_data_filename(filename):
    """Return (pair, timeframe) for a candle file name, or None."""
    if not filename.endswith(".json"):
        return None
    base = _CANDLE_TYPE_SUFFIX.sub("", filename[:-5])
    parts = base.rsplit("-", 1)
    if len(parts) != 2 or not parts[1]:
        return None
    pair_part, timeframe = parts

    symbols = pair_part.split("_")
    if len(symbols) == 2:
        pair = f"{symbols[0]}/{symbols[1]}"
    elif len(symbols) == 3:
        pair = f"{symbols[0]}/{symbols[1]}:{symbols[2]}"
    else:
        return None
    return pair, timeframe


def _format_ms(ms):
    return datetime.fromtimestamp(ms / 1000, timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def read_candle_range(path):
    """First and last candle timestamp of a freqtrade json file, or (None, None)."""
    try:
        with open(path, "r") as f:
            candles = json.load(f)
    except (OSError, ValueError) as e:
        print(f"Warning: could not read {os.path.basename(path)}: {e}", flush=True)
        return None, None
    if not isinstance(candles, list) or not candles:
        return None, None
    try:
        return _format_ms(candles[0][0]), _format_ms(candles[-1][0])
    except (TypeError, IndexError, ValueError, OverflowError, OSError):
        return None, None


def _candle_files(exchange_path):
    # futures data lives in a "futures" subdirectory
    for directory in (exchange_path, os.path.join(exchange_path, "futures")):
        if not os.path.isdir(directory):
            continue
        for filename in sorted(os.listdir(directory)):
            full = os.path.join(directory, filename)
            if os.path.isfile(full):
                yield filename, full


def scan_data_directory(data_dir):
    result = {"exchanges": []}
    if not os.path.isdir(data_dir):
        return result

    for exchange_name in sorted(os.listdir(data_dir)):
        exchange_path = os.path.join(data_dir, exchange_name)
        if not os.path.isdir(exchange_path):
            continue

        pairs = {}
        for filename, full in _candle_files(exchange_path):
            parsed = parse_data_filename(filename)
            if parsed is None:
                continue
            pair, timeframe = parsed
            timeframes = pairs.setdefault(pair, {})
            if timeframe in timeframes:
                continue
            start, end = read_candle_range(full)
            timeframes[timeframe] = {"timeframe": timeframe, "from": start, "to": end}

        if pairs:
            result["exchanges"].append({
                "name": exchange_name,
                "pairs": [
                    {"pair": pair, "timeframes": [tfs[k] for k in sorted(tfs)]}
                    for pair, tfs in sorted(pairs.items())
                ],
            })
    return result


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    data_dir = argv[0] if argv else "/freqtrade/user_data/data"
    report = scan_data_directory(data_dir)
    print(START_MARKER)
    print(json.dumps(report))
    print(END_MARKER, flush=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
