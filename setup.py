import setuptools

VERSION = '0.1.0'

setup_params = dict(
    name='cacheproxy',
    version=VERSION,
    keywords='requests cache proxy offline webview',
    packages=setuptools.find_packages(exclude=['tests', 'tests.*']),
    include_package_data=True,
    description='Offline-capable caching reverse proxy for a single origin',
    long_description=open('README.md').read(),
    long_description_content_type='text/markdown',
    install_requires=['requests>=2.28', 'urllib3>=1.26'],
    extras_require={
        'dev': [
            'mockito>=1.4',
            'pytest>=7.0',
            'pytest-cov>=4.0',
            'ddt>=1.6',
        ]
    },
    entry_points={
        'console_scripts': ['cacheproxy=cacheproxy.__main__:main'],
    },
    python_requires='>=3.9',
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Environment :: Web Environment',
        'Intended Audience :: Developers',
        'Natural Language :: English',
        'Operating System :: OS Independent',

        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3 :: Only',
    ],
)


if __name__ == '__main__':
    setuptools.setup(**setup_params)
