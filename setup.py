#!/usr/bin/env python3
"""
Setup script for the WebRTC HTTPS server package.
Install with: pip install -e .
"""

from setuptools import setup, find_packages

setup(
    name="webrtc-https-server",
    version="0.1.0",
    description="Single-page HTTPS server giving local WebRTC pages a secure context",
    packages=find_packages(include=["webrtc_server", "webrtc_server.*"]),
    python_requires=">=3.8",
    install_requires=[
        "pyyaml",
        "cryptography",
        "psutil",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "webrtc-server=webrtc_server.main:main_cli",
        ],
    },
    include_package_data=True,
    zip_safe=False,
)
