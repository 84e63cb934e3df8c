"""FinGuard - Authentication & Session Security Engine.

Security core for a banking/microfinance back office:
- Signed access tokens and revocable refresh-token sessions
- Role-based permission evaluation with role inheritance
- Brute-force lockout with shared counters
- MFA challenges, backup codes and step-up authentication
- Trusted-device MFA bypass
- Security alerting
"""

__version__ = "0.1.0"
__author__ = "FinGuard Contributors"
