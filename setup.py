from setuptools import setup

setup(
    name='medvault',
    version='1.0.0',
    description='A ledger of medical record metadata pointers with per-entry access flags, persisted in SQLite.',
    long_description=open('README.md').read(),
    long_description_content_type='text/markdown',
    author='Mscebec',
    author_email='mpakaboy@gmail.com',
    py_modules=['medvault'],
    install_requires=[
        'SQLAlchemy>=1.4'
    ],
    classifiers=[
        'Programming Language :: Python :: 3.9',
        'License :: OSI Approved :: MIT License',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.9',
)
