import setuptools
import os

# Load version string
loaded_vars = dict()
with open(os.path.join(os.path.dirname(__file__), 'gridcal', 'version.py')) as fv:
    exec(fv.read(), loaded_vars)

setuptools.setup(
    name="gridcal",
    version=loaded_vars['__version__'],
    author="snototter",
    author_email="snototter@users.noreply.github.com",
    description="Blob-grid calibration pattern detection and coverage-driven frame selection.",
    url="https://github.com/snototter/pycamcalib",
    packages=setuptools.find_packages(exclude=['tests', 'tests.*']),
    install_requires=[
        'numpy',
        'opencv-python-headless<5',
        'toml',
        'vito'
    ],
    extras_require={
        'test': ['pytest']
    },
    entry_points={
        'console_scripts': ['gridcal-select=gridcal.select_cli:select_frames_cli']
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires='>=3.8',
)
