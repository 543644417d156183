import json
import re
import shlex

import pytest

from botfleet.models.download import DataDownloadSpec, ExchangeDownloadConfig, TradingMode
from botfleet.runner import data_scan
from botfleet.runner.download_script import (
    SCAN_HEREDOC, build_download_script, parse_data_availability, parse_download_phase, shell_escape,
)


def make_spec(**overrides):
    fields = dict(
        runner_id="runner-1",
        exchanges=[
            ExchangeDownloadConfig(name="binance", timeframes=["5m", "1h"], pairs_pattern=".*/USDT", days=7),
            ExchangeDownloadConfig(name="kraken", timeframes=["1d"], pairs_pattern="BTC/USD",
                                   trading_mode=TradingMode.FUTURES),
        ],
        upload_url="https://storage.example.com/upload?sig=abc&x=1",
        existing_data_url="https://storage.example.com/existing?sig=def",
    )
    fields.update(overrides)
    return DataDownloadSpec(**fields)


class TestScript:

    def test_one_download_per_exchange(self):
        script = build_download_script(make_spec())
        lines = [line for line in script.splitlines() if "download-data" in line]
        assert len(lines) == 2
        binance = shlex.split(lines[0])
        assert binance[:2] == ["freqtrade", "download-data"]
        assert binance[binance.index("--pairs") + 1] == ".*/USDT"
        assert binance[binance.index("--days") + 1] == "7"
        assert binance[binance.index("--trading-mode") + 1] == "spot"
        assert binance[binance.index("--timeframes") + 1:binance.index("--timeframes") + 3] == ["5m", "1h"]
        kraken = shlex.split(lines[1])
        assert kraken[kraken.index("--trading-mode") + 1] == "futures"

    def test_urls_are_not_interpolated(self):
        script = build_download_script(make_spec())
        assert "storage.example.com" not in script
        assert "UPLOAD_URL" in script
        assert "EXISTING_DATA_URL" in script

    def test_hostile_values_stay_quoted(self):
        hostile = "'; rm -rf / #"
        spec = make_spec(exchanges=[ExchangeDownloadConfig(name="binance", timeframes=["5m"], pairs_pattern=hostile)])
        script = build_download_script(spec)
        line = next(line for line in script.splitlines() if "download-data" in line)
        tokens = shlex.split(line)
        assert tokens[tokens.index("--pairs") + 1] == hostile
        assert "rm" not in tokens[tokens.index("--pairs") + 2:]

    def test_phases_are_announced_in_order(self):
        script = build_download_script(make_spec())
        phases = [int(p) for p, _ in re.findall(r"===PHASE:(\d+):([^=]+)===", script)]
        assert phases == sorted(phases)
        assert phases[0] == 5
        assert phases[-1] == 100

    def test_scanner_is_embedded(self):
        script = build_download_script(make_spec())
        assert f"<<'{SCAN_HEREDOC}'" in script
        assert "def scan_data_directory" in script
        assert script.rstrip().endswith(shell_escape("===PHASE:100:completed==="))

    def test_custom_paths(self):
        script = build_download_script(make_spec(), user_data_dir="/srv/ud", freqtrade_bin="/opt/ft/bin/freqtrade",
                                       python_bin="/usr/bin/python3.11", work_dir="/srv/work/t1")
        assert "cd /srv/work/t1" in script
        assert "/opt/ft/bin/freqtrade download-data --userdir /srv/ud" in script
        assert "/usr/bin/python3.11 - /srv/ud/data <<" in script


class TestLogParsing:

    def test_availability_report(self):
        logs = "\n".join([
            "===PHASE:95:scanning===",
            data_scan.START_MARKER,
            json.dumps({"exchanges": [{"name": "binance", "pairs": [
                {"pair": "BTC/USDT", "timeframes": [
                    {"timeframe": "5m", "from": "2024-01-01T00:00:00Z", "to": "2024-01-31T23:55:00Z"},
                ]},
            ]}]}),
            data_scan.END_MARKER,
            "===PHASE:100:completed===",
        ])
        availability = parse_data_availability(logs)
        timeframe = availability.exchanges[0].pairs[0].timeframes[0]
        assert availability.exchanges[0].name == "binance"
        assert timeframe.start.year == 2024
        assert timeframe.end.day == 31

    @pytest.mark.parametrize("logs", [
        "no markers at all",
        f"{data_scan.START_MARKER}\n{{\"exchanges\": []}}",
        f"{data_scan.START_MARKER}\nnot json\n{data_scan.END_MARKER}",
    ])
    def test_missing_or_malformed_report(self, logs):
        assert parse_data_availability(logs) is None

    def test_latest_phase(self):
        logs = "===PHASE:5:fetching existing data===\nsome output\n===PHASE:40:downloading kraken===\n"
        assert parse_download_phase(logs) == (40.0, "downloading kraken")
        assert parse_download_phase("nothing yet") is None


class TestDataScan:

    @pytest.mark.parametrize("filename,expected", [
        ("BTC_USDT-5m.json", ("BTC/USDT", "5m")),
        ("BTC_USDT_USDT-1h-futures.json", ("BTC/USDT:USDT", "1h")),
        ("ETH_USDT_USDT-8h-funding_rate.json", ("ETH/USDT:USDT", "8h")),
        ("BTC_USDT-5m.feather", None),
        ("README.json", None),
    ])
    def test_parse_data_filename(self, filename, expected):
        assert data_scan.parse_data_filename(filename) == expected

    def test_scan_reads_first_and_last_candle(self, tmp_path):
        binance = tmp_path / "binance"
        (binance / "futures").mkdir(parents=True)
        (binance / "BTC_USDT-5m.json").write_text(json.dumps([
            [1704067200000, 1, 2, 0.5, 1.5, 10],
            [1704067500000, 1, 2, 0.5, 1.5, 10],
        ]))
        (binance / "futures" / "BTC_USDT_USDT-1h-futures.json").write_text(json.dumps([
            [1704067200000, 1, 2, 0.5, 1.5, 10],
        ]))
        (binance / "ETH_USDT-5m.json").write_text("[]")
        (tmp_path / "stray.txt").write_text("ignored")

        report = data_scan.scan_data_directory(str(tmp_path))
        assert [e["name"] for e in report["exchanges"]] == ["binance"]
        pairs = {p["pair"]: p["timeframes"] for p in report["exchanges"][0]["pairs"]}
        assert pairs["BTC/USDT"] == [{"timeframe": "5m", "from": "2024-01-01T00:00:00Z", "to": "2024-01-01T00:05:00Z"}]
        assert pairs["BTC/USDT:USDT"][0]["timeframe"] == "1h"
        assert pairs["ETH/USDT"] == [{"timeframe": "5m", "from": None, "to": None}]

    def test_missing_directory(self, tmp_path):
        assert data_scan.scan_data_directory(str(tmp_path / "nope")) == {"exchanges": []}

    def test_main_prints_markers(self, tmp_path, capsys):
        assert data_scan.main([str(tmp_path)]) == 0
        out = capsys.readouterr().out
        assert parse_data_availability(out).exchanges == []
