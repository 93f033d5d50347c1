"""
Setup script for Nostream - private direct messages over Nostr relays.

Nostream provides:
- Three-layer message envelopes (rumor, seal, gift wrap)
- Anonymous, deterministic conversation tags
- Time-ranged history synchronization with gap detection
- Subscription and publish lifecycle management
- Password-encrypted identity storage
"""

from setuptools import setup, find_packages
import os

this_directory = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='nostream',
    version='0.3.0',
    author='nostream contributors',
    description='Private direct messaging core for Nostr relays: gift-wrapped envelopes, conversation tags and history sync',
    long_description=long_description,
    long_description_content_type='text/markdown',
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Intended Audience :: Developers',
        'Topic :: Communications :: Chat',
        'Topic :: Security :: Cryptography',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Operating System :: OS Independent',
        'Environment :: Console',
    ],
    python_requires='>=3.11',
    install_requires=[
        'cryptography>=42.0.4',
        'argon2-cffi>=23.1.0',
        'aiofiles>=23.2.1',
        'rich>=13.7.0',
        'bech32>=1.2.0',
        'coincurve>=18.0.0',
    ],
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'pytest-asyncio>=0.21.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'nostream=nostream.main:main',
        ],
    },
)
