# checks/report.py

import os
import csv
import json
import logging
import pandas as pd
from colorama import init, Fore, Style

# Initialize colorama
init()

logger = logging.getLogger("mailsentry.report")

GOOD_STATUSES = ("PASS", "CLEAN", "SENT")
BAD_STATUSES = ("FAIL", "LISTED", "ERROR", "INVALID", "PERMERROR", "SEND_FAILED", "ABANDONED")
RISK_LEVELS = {"CLEAN": "good", "LOW": "warning", "MEDIUM": "warning", "HIGH": "bad"}


def output_message(symbol, message, level="info"):
    """Generic function to print messages with different colors and symbols based on the level."""
    colors = {
        "good": Fore.GREEN + Style.BRIGHT,
        "warning": Fore.YELLOW + Style.BRIGHT,
        "bad": Fore.RED + Style.BRIGHT,
        "indifferent": Fore.BLUE + Style.BRIGHT,
        "error": Fore.RED + Style.BRIGHT + "!!! ",
        "info": Fore.WHITE + Style.BRIGHT,
    }
    color = colors.get(level, Fore.WHITE + Style.BRIGHT)
    print(color + f"{symbol} {message}" + Style.RESET_ALL)


def _status_level(status):
    if status in GOOD_STATUSES:
        return "good"
    if status in BAD_STATUSES:
        return "bad"
    return "warning"


def _symbol(level):
    return {"good": "[+]", "bad": "[-]"}.get(level, "[?]")


def flatten(result):
    """Flatten a result dict for tabular output: nested dicts become PREFIX_KEY columns."""
    row = {}
    for key, value in result.items():
        if isinstance(value, dict):
            for sub_key, sub_value in value.items():
                if isinstance(sub_value, (dict, list)):
                    sub_value = json.dumps(sub_value, default=str)
                row[f"{key}_{sub_key}".upper()] = sub_value
        elif isinstance(value, list):
            row[key.upper()] = json.dumps(value, default=str)
        else:
            row[key.upper()] = value
    return row


def write_to_excel(data, file_name="output.xlsx"):
    """Writes results to an Excel file, appending if the file exists."""
    flat_data = [flatten(r) for r in data]
    if os.path.exists(file_name) and os.path.getsize(file_name) > 0:
        existing_df = pd.read_excel(file_name)
        new_df = pd.DataFrame(flat_data)
        combined_df = pd.concat([existing_df, new_df])
        combined_df.to_excel(file_name, index=False)
    else:
        pd.DataFrame(flat_data).to_excel(file_name, index=False)


def write_to_csv(data, file_name="output.csv"):
    """Writes results to a CSV file."""
    flat_data = [flatten(r) for r in data]
    if not flat_data:
        return

    fieldnames = list(flat_data[0].keys())
    for row in flat_data[1:]:
        fieldnames.extend(k for k in row if k not in fieldnames)
    with open(file_name, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        writer.writerows(flat_data)


def output_json(results):
    """Output results as JSON to stdout."""
    print(json.dumps(results, indent=2, default=str))


def print_verdict(verdict):
    """Print one message's SPF/DKIM/DMARC verdict."""
    output_message("[*]", f"Message: {verdict.message_id or '<no Message-ID>'}", "indifferent")
    output_message("[*]", f"From: {verdict.from_address} (sender IP {verdict.sender_ip})", "indifferent")

    if verdict.spf_result:
        level = _status_level(verdict.spf_result.status.value)
        output_message(_symbol(level), str(verdict.spf_result), level)
        if verdict.spf_result.record:
            output_message("   ", f"SPF record: {verdict.spf_result.record}", "info")
    if verdict.dkim_result:
        level = _status_level(verdict.dkim_result.status.value)
        output_message(_symbol(level), str(verdict.dkim_result), level)
    if verdict.dmarc_result:
        dmarc = verdict.dmarc_result
        level = _status_level(dmarc.status.value)
        output_message(_symbol(level), str(dmarc), level)
        if dmarc.record:
            output_message("   ", f"DMARC record: {dmarc.record}", "info")
            output_message(
                "   ", f"Aligned: SPF={dmarc.spf_aligned} DKIM={dmarc.dkim_aligned}", "info"
            )

    status = verdict.overall_status.value
    if verdict.error_message:
        output_message("[!]", f"Validation error: {verdict.error_message}", "error")
    output_message("[*]", f"Overall: {status} ({verdict.processing_time_ms} ms)", _status_level(status))
    print()  # Padding


def print_dnsbl_result(result):
    """Print one DNSBL check with its hits and per-list query errors."""
    level = RISK_LEVELS.get(result.risk_level.value, "warning")
    output_message("[*]", f"IP address: {result.ip_address}", "indifferent")
    if result.error_message:
        output_message("[!]", result.error_message, "error")
    output_message(
        _symbol(_status_level(result.status.value)),
        f"Status: {result.status.value}, risk {result.risk_level.value} "
        f"({result.hit_count} hits, total weight {result.total_weight:g}, "
        f"{result.checked_lists} lists checked)",
        level,
    )
    for hit in result.hits:
        output_message("   ", f"{hit.list_name} [{hit.hostname}] {hit.return_code}: {hit.description}", "bad")
    for query in result.query_results:
        if query.error:
            output_message("[?]", f"{query.hostname}: {query.error_message}", "warning")
    print()  # Padding


def print_report(report):
    """Print a DMARC aggregate report summary."""
    output_message("[*]", f"Report: {report.report_id}", "indifferent")
    output_message(
        "[*]", f"Domain: {report.domain} ({report.begin_time:%Y-%m-%d %H:%M} to {report.end_time:%Y-%m-%d %H:%M} UTC)",
        "indifferent",
    )
    output_message(
        "[*]",
        f"Messages: {report.total_messages} total, {report.compliant_messages} compliant, "
        f"{report.failed_messages} failed ({report.compliance_rate:.2f}%)",
        "info",
    )
    if report.rua:
        output_message("[*]", f"Aggregate reports go to: {', '.join(report.rua)}", "info")
    else:
        output_message("[?]", "No rua recipient published.", "warning")
    if report.report_path:
        output_message("[*]", f"File: {report.report_path} ({report.report_size} bytes)", "info")
    level = _status_level(report.status.value)
    output_message(_symbol(level), f"Status: {report.status.value} (attempts: {report.send_attempts})", level)
    if report.error_message:
        output_message("[!]", report.error_message, "error")
    print()  # Padding
