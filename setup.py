#!/usr/bin/env python3
"""
Setup script for snapsync

Installation:
    pip install .
    pip install -e .  # Development mode

Distribution:
    python setup.py sdist bdist_wheel
    twine upload dist/*
"""

from setuptools import setup
import re

# Read version from snapsync.py
with open('snapsync.py', 'r', encoding='utf-8') as f:
    content = f.read()
    version_match = re.search(r'^__version__\s*=\s*[\'"]([^\'"]*)[\'"]', content, re.MULTILINE)
    if version_match:
        version = version_match.group(1)
    else:
        raise RuntimeError("Unable to find version string in snapsync.py")

# Read long description from README
with open('README.md', 'r', encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='snapsync',
    version=version,
    description='Replicate only the changed blocks of a snapshotted block device to a local or remote copy, with optional rollback capture.',
    long_description=long_description,
    long_description_content_type='text/markdown',
    py_modules=['snapsync'],
    python_requires='>=3.8',
    install_requires=[
        'xxhash>=3.0.0',
    ],
    extras_require={
        'dev': [
            'pytest>=7.0.0',
            'pytest-cov>=4.0.0',
            'mypy>=1.0.0',
            'black>=23.0.0',
            'flake8>=6.0.0',
            'isort>=5.12.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'snapsync=snapsync:main',
        ],
    },
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: System Administrators',
        'License :: OSI Approved :: GNU General Public License v3 or later (GPLv3+)',
        'Operating System :: POSIX :: Linux',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.8',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Topic :: System :: Archiving :: Backup',
        'Topic :: System :: Archiving :: Mirroring',
        'Topic :: Utilities',
    ],
    keywords='lvm snapshot block-device replication backup delta rollback',
    license='GPL-3.0-or-later',
    platforms=['linux'],
    zip_safe=False,
)
