"""
Setup script for hashhello - end-to-end encrypted peer-to-peer messenger.

This messenger provides:
- Direct peer-to-peer sessions (no server ever sees plaintext)
- Identities addressed by a 9-digit number derived from the public key
- ECDH P-256 handshake with identity verification
- AES-256-GCM message encryption
- Password-encrypted local storage of identity, chats and contacts
- Plaintext backup bundles for moving to another device
"""

from setuptools import setup, find_packages
import os

this_directory = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='hashhello',
    version='0.3.0',
    description='End-to-end encrypted peer-to-peer messenger addressed by numeric identities',
    long_description=long_description,
    long_description_content_type='text/markdown',
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: End Users/Desktop',
        'Topic :: Communications :: Chat',
        'Topic :: Security :: Cryptography',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Operating System :: OS Independent',
        'Environment :: Console',
    ],
    python_requires='>=3.9',
    install_requires=[
        'cryptography>=42.0.4',
        'PyJWT[crypto]>=2.8.0',
        'aiofiles>=23.2.1',
        'rich>=13.7.0',
        'tomli>=2.0.1; python_version < "3.11"',
    ],
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'pytest-asyncio>=0.23.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'hashhello=hashhello.main:main',
        ],
    },
)
