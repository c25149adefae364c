#!/usr/bin/env python
# -*- coding:utf-8 -*-

from setuptools import setup

packages = [
    'greeter',
    'greeter.web'
    ]

requires = []

setup(
    name='greeter',
    version='0.1',
    packages=packages,
    description='Event-driven HTTP server greeting the world on /hello',
    python_requires='>=3.6',
    install_requires=requires,
    entry_points={
        'console_scripts': ['greeter = greeter.hello:main']
    }
)
