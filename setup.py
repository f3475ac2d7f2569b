from setuptools import setup

DESCRIPTION = 'Chunked, compressed, N-dimensional array files with ' \
              'configurable axis order, for Python.'

with open('README.md') as f:
    LONG_DESCRIPTION = f.read()

dependencies = [
    'asciitree',
    'numpy>=1.20',
    'fasteners',
    'numcodecs>=0.10',
    'donfig>=0.8',
]

setup(
    name='omstore',
    description=DESCRIPTION,
    long_description=LONG_DESCRIPTION,
    long_description_content_type='text/markdown',
    use_scm_version={
        'version_scheme': 'guess-next-dev',
        'local_scheme': 'dirty-tag',
        'write_to': 'omstore/version.py',
        'fallback_version': '0.1.0',
    },
    setup_requires=[
        'setuptools>=38.6.0',
        'setuptools-scm>1.5.4',
    ],
    extras_require={
        'cli': [
            'typer',
        ],
        'test': [
            'pytest',
            'typer',
        ],
    },
    entry_points={
        'console_scripts': [
            'omstore=omstore.cli:app',
        ],
    },
    python_requires='>=3.9, <4',
    install_requires=dependencies,
    package_dir={'': '.'},
    packages=['omstore', 'omstore.tests'],
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Intended Audience :: Developers',
        'Intended Audience :: Information Technology',
        'Intended Audience :: Science/Research',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python',
        'Topic :: Software Development :: Libraries :: Python Modules',
        'Operating System :: Unix',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
    ],
    license='MIT',
)
