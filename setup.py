from setuptools import setup

version = '0.1'

with open("README.md", "r", encoding="utf-8") as f:
    long_descr = f.read()

setup(
    name='pyneets',
    packages=['pyneets'],
    version=version,
    license='Apache 2.0',
    description='Bridge a NEETS Audio Amp to WebSocket clients',
    long_description=long_descr,
    long_description_content_type='text/markdown',
    author='johnno',
    author_email='johnno@example.com',
    url='https://github.com/johnno/pyneets',
    download_url=f'https://github.com/johnno/pyneets/archive/{version}.tar.gz',
    keywords=['NEETS', 'Amp', 'WebSocket'],
    install_requires=[
        "aiohttp>=3.8.3",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Intended Audience :: Developers',
        'Topic :: Home Automation',
        'License :: OSI Approved :: Apache Software License',
        'Programming Language :: Python :: 3.10'
    ],
)
