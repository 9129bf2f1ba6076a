#!/usr/bin/env python3
"""
Setup script for usbmon
"""

from setuptools import setup, find_packages
import os
import sys

# Import the version without importing the package
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
from usbmon.__version__ import __version__

# README for long_description
def read_file(filename):
    with open(os.path.join(os.path.dirname(__file__), filename), encoding='utf-8') as f:
        return f.read()

setup(
    name='usbmon',
    version=__version__,
    description='USB device monitor with permission negotiation and connection pooling',
    long_description=read_file('README.md'),
    long_description_content_type='text/markdown',
    packages=find_packages(exclude=['tests', 'tests.*', 'docs']),
    python_requires='>=3.10',
    install_requires=[
        'pyudev',   # Enumeration and hot-plug events from udev
        'pyusb',    # Opening devices, claiming interfaces, control transfers
    ],
    extras_require={
        'dev': [
            'pytest>=7.0',
            'pytest-cov',
            'pytest-timeout',
        ],
    },
    entry_points={
        'console_scripts': [
            'usbmon=usbmon.cli:main',
        ],
    },
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Programming Language :: Python :: 3.13',
        'Operating System :: POSIX :: Linux',
        'Topic :: System :: Hardware :: Universal Serial Bus (USB)',
    ],
)
