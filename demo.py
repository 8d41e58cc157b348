#!/usr/bin/env python3
"""
Phishing Scanner - Demo Script
==============================
Scores every sample message in data/test_emails/ and prints a short
summary per message followed by the full report for the riskiest one.

Run: python demo.py
"""

from phishing_scanner import PhishingScanner, ReportGenerator, ScannerError


def run_demo():
    """Run demonstration on all test emails."""
    print("=" * 70)
    print("PHISHING SCANNER - DEMONSTRATION")
    print("=" * 70)
    print()

    scanner = PhishingScanner()
    reporter = ReportGenerator()

    names = scanner.list_test_emails()
    if not names:
        print(f"No test emails found in {scanner.test_emails_dir}")
        return

    results = []
    for name in names:
        try:
            result = scanner.analyze_reference(name)
        except ScannerError as e:
            print(f"[ERROR] {name}: {e}")
            print()
            continue

        results.append(result)
        icon = "[!]" if result.is_likely_phishing else "[OK]"
        print(f"{icon} {name}")
        print(f"    Scam Probability: {result.scam_probability:.1f}%")
        print(f"    Technical / Body / Subject: "
              f"{result.tech_score:.0f}% / {result.body_score:.0f}% / {result.subject_score:.0f}%")
        triggers = result.body_triggers + result.subject_triggers
        if triggers:
            print("    Top Triggers:")
            for trigger in triggers[:3]:
                print(f"      - {trigger.text}")
        print()

    if results:
        riskiest = max(results, key=lambda r: r.scam_probability)
        print("=" * 70)
        print("DETAILED REPORT FOR THE HIGHEST-RISK EMAIL")
        print()
        print(reporter.generate_text_report(riskiest))


if __name__ == '__main__':
    run_demo()
