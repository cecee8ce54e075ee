from datetime import datetime

from conftest import LOCAL_CLOCK_STATUS, PEERS_TEXT, SYNCED_STATUS
from timekeeper.services.status_parser import parse_peers, parse_status, parse_timestamp


def test_parse_status_extracts_labelled_fields():
    status = parse_status(SYNCED_STATUS)

    assert status.leap_indicator == 0
    assert status.stratum == 4
    assert status.precision == -23
    assert status.root_delay == 0.0154902
    assert status.root_dispersion == 7.7773722
    assert status.reference_id == "0x14653909"
    assert status.source == "time.windows.com,0x9"
    assert status.poll_interval_exponent == 10
    assert status.poll_interval_seconds == 1024
    assert status.phase_offset == -0.0038147
    assert status.seconds_since_last_good_sync == 2820.1997480
    assert status.never_synced is False
    assert status.is_local_clock is False
    assert status.is_healthy is True

    expected = datetime(2025, 9, 11, 14, 32, 5).astimezone()
    assert status.last_successful_sync == expected


def test_parse_status_local_clock_and_unspecified_sync_time():
    status = parse_status(LOCAL_CLOCK_STATUS)

    assert status.stratum == 0
    assert status.source == "Local CMOS Clock"
    assert status.never_synced is True
    assert status.last_successful_sync is None
    assert status.is_local_clock is True


def test_free_running_clock_counts_as_local_even_with_nonzero_stratum():
    status = parse_status("Stratum: 1 (primary reference)\nSource: Free-running System Clock\n")
    assert status.is_local_clock is True


def test_unmatched_values_leave_fields_absent():
    text = (
        "Stratum: n/a\n"
        "Poll Interval: huge\n"
        "Root Delay: ???\n"
        "this line wrapped from the previous one\n"
        "Last Successful Sync Time: Donnerstag, 11. September\n"
        "Source: pool.example.org\n"
    )
    status = parse_status(text)

    assert status.stratum is None
    assert status.poll_interval_exponent is None
    assert status.root_delay is None
    assert status.source == "pool.example.org"
    # an unreadable timestamp is not the "never synchronized" sentinel
    assert status.last_successful_sync is None
    assert status.never_synced is False


def test_missing_sync_time_line_means_never_synced():
    status = parse_status("Stratum: 3\nSource: pool.example.org\n")
    assert status.never_synced is True


def test_poll_interval_outside_observed_range_is_ignored():
    assert parse_status("Poll Interval: 18 (262144s)\n").poll_interval_exponent is None
    assert parse_status("Poll Interval: 6 (64s)\n").poll_interval_exponent == 6


def test_parse_timestamp_formats():
    assert parse_timestamp("unspecified") is None
    assert parse_timestamp("") is None
    assert parse_timestamp("2025-09-11 14:32:05") == datetime(2025, 9, 11, 14, 32, 5).astimezone()
    assert parse_timestamp("11.09.2025 14:32:05") == datetime(2025, 9, 11, 14, 32, 5).astimezone()


def test_parse_peers_blocks():
    report = parse_peers(PEERS_TEXT)

    assert report.query_succeeded is True
    assert report.count == 2

    first, second = report.peers
    assert first.name == "0.europe.pool.ntp.org,0x9"
    assert first.state == "Active"
    assert first.stratum == 2
    assert first.last_sync == "9/11/2025 2:32:05 PM"
    assert first.peer_type is None

    assert second.name == "1.europe.pool.ntp.org,0x9"
    assert second.state == "Pending"
    assert second.stratum == 0
    assert second.peer_type == "Manual (NTP.NtpServer)"
    assert second.last_sync is None


def test_parse_peers_without_peers():
    report = parse_peers("#Peers: 0\n")
    assert report.count == 0
    assert report.peers == []


def test_parse_timestamp_day_first_and_month_first():
    # 12-hour clock is en-US, always month-first
    assert parse_timestamp("03/09/2025 2:32:05 PM") == datetime(2025, 3, 9, 14, 32, 5).astimezone()
    assert parse_timestamp("25/09/2025 14:32:05") == datetime(2025, 9, 25, 14, 32, 5).astimezone()
    assert parse_timestamp("09/25/2025 14:32:05") == datetime(2025, 9, 25, 14, 32, 5).astimezone()
    assert parse_timestamp("09/09/2025 14:32:05") == datetime(2025, 9, 9, 14, 32, 5).astimezone()


def test_parse_timestamp_ambiguous_day_and_month_is_unreadable():
    # 3 September (en-GB) or 9 March (en-US)
    assert parse_timestamp("03/09/2025 14:32:05") is None


def test_ambiguous_sync_time_leaves_field_absent_but_keeps_counter():
    status = parse_status(
        "Stratum: 2\n"
        "Source: pool.example.org\n"
        "Last Successful Sync Time: 03/09/2025 14:32:05\n"
        "Time since Last Good Sync Time: 600.0s\n"
    )

    assert status.last_successful_sync is None
    assert status.never_synced is False
    assert status.seconds_since_last_good_sync == 600.0


def test_negative_sync_counter_is_dropped():
    status = parse_status("Stratum: 2\nSource: x\nTime since Last Good Sync Time: -1.5s\n")

    assert status.seconds_since_last_good_sync is None
    assert status.stratum == 2
    assert status.source == "x"
