"""Setup script for the Billing Events service."""

from setuptools import setup, find_packages

setup(
    name="billing-events",
    version="1.0.0",
    description=(
        "Idempotent webhook processing, subscription billing, payout settlement "
        "and outbound event delivery"
    ),
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=find_packages(include=["billing_events", "billing_events.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "pytest-mock>=3.12.0",
            "fakeredis[lua]>=2.21.0",
        ],
        "dev": [
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "billing-api=billing_events.api.main:main",
            "billing-scheduler=billing_events.workers.billing_scheduler:main",
            "billing-delivery-worker=billing_events.workers.delivery_worker:main",
            "billing-payout-worker=billing_events.workers.payout_worker:main",
            "billing-reconciliation-worker=billing_events.workers.reconciliation_worker:main",
            "billing-event-replayer=billing_events.workers.event_replayer:main",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Financial and Insurance Industry",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
