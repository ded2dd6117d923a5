import setuptools

install_requires = [
    "aiohttp",
    "aiortc>=1.9.0",
    "av",
    "pyee>=9.0.0",
    "python-socketio>=5.0.0",
    "websockets>=13.0",
]

setuptools.setup(
    name="aioroulette",
    version="0.1.0",
    description="Peer-to-peer audio / video roulette sessions on top of aiortc",
    license="BSD",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Environment :: Web Environment",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: BSD License",
        "Operating System :: OS Independent",
        "Programming Language :: Python",
        "Programming Language :: Python :: 3",
    ],
    package_dir={"": "src"},
    packages=["aioroulette", "aioroulette.contrib"],
    python_requires=">=3.10",
    install_requires=install_requires,
    extras_require={"dev": ["pytest"]},
)
