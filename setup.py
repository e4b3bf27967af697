"""
Setup script for atlas-fusion package.

This package fuses redundant pose observations from multiple sensors into
one best-estimate pose per entity using weighted position and quaternion
averaging.
"""

from setuptools import setup, find_packages
import os

# Read long description from README
here = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(here, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

# Read requirements
with open(os.path.join(here, 'requirements.txt'), encoding='utf-8') as f:
    requirements = [line.strip() for line in f if line.strip() and not line.startswith('#')]

# Extract core requirements (exclude dev dependencies)
core_requirements = []
dev_requirements = []

for req in requirements:
    if any(dev_pkg in req for dev_pkg in ['pytest', 'black', 'flake8', 'mypy', 'sphinx']):
        dev_requirements.append(req)
    else:
        core_requirements.append(req)

setup(
    name='atlas-fusion',
    version='1.0.0',
    description='Multi-Sensor Pose Fusion with Weighted Quaternion Averaging',
    long_description=long_description,
    long_description_content_type='text/markdown',
    author='Atlas Fusion Team',

    packages=find_packages(where='src'),
    package_dir={'': 'src'},

    # Core dependencies
    install_requires=core_requirements,

    # Optional dependencies
    extras_require={
        'dev': dev_requirements,
        'test': dev_requirements,
    },

    # Python version requirement
    python_requires='>=3.8',

    # Entry points for command line usage
    entry_points={
        'console_scripts': [
            'atlas-fusion=atlas_fusion.main:main',
        ],
    },

    # Classifiers for PyPI
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Science/Research',
        'Intended Audience :: Developers',
        'Topic :: Scientific/Engineering :: Mathematics',
        'Topic :: Software Development :: Libraries :: Python Modules',
        'Programming Language :: Python :: 3',
        'Operating System :: OS Independent',
    ],

    # Keywords for searchability
    keywords='robotics pose-fusion sensor-fusion quaternion-averaging motion-capture markers',
)
