#!/usr/bin/env python3
"""
VPN Session Core
Setup configuration
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read README for long description
readme_file = Path(__file__).parent / "README.md"
long_description = readme_file.read_text() if readme_file.exists() else ""

# Read requirements
requirements_file = Path(__file__).parent / "requirements.txt"
if requirements_file.exists():
    with open(requirements_file) as f:
        requirements = [
            line.strip()
            for line in f
            if line.strip() and not line.startswith('#')
        ]
else:
    requirements = [
        'PyYAML>=6.0',
        'rich>=13.0.0',
        'requests>=2.31.0',
        'cryptography>=41.0.0',
    ]

setup(
    name="vpn-session",
    version="1.0.0",
    author="VPN Session Team",
    author_email="info@example.com",
    description="VPN session and connection orchestration core",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=['tests', 'tests.*']),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: System :: Networking",
        "Topic :: Security",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Operating System :: POSIX :: Linux",
    ],
    python_requires=">=3.8",
    install_requires=requirements,
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'pytest-timeout>=2.1.0',
        ],
        'dev': [
            'pytest>=7.4.0',
            'pytest-cov>=4.1.0',
            'pytest-timeout>=2.1.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'vpn-session=vpn_session.cli.interface:main',
        ],
    },
    zip_safe=False,
    keywords='vpn wireguard openvpn ikev2 session certificate telemetry',
)
