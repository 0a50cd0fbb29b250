"""
╔══════════════════════════════════════════╗
║     MAILBRIDGE — Hands: Mail Worker      ║
╚══════════════════════════════════════════╝

Mail command executor plus the IMAP/SMTP store and
MIME helpers it runs on.
"""
