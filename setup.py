from setuptools import setup, find_packages
from pathlib import Path

package_name = 'strimzi-kafka-operator'
description = (
    'A Kubernetes Operator reconciling Kafka and ZooKeeper clusters '
    'declared as Strimzi Kafka resources.'
)
author = 'Association of Universities for Research in Astronomy'
author_email = 'sqre-admin@lists.lsst.org'
license = 'MIT'
url = 'https://github.com/lsst-sqre/strimzi-kafka-operator'
pypi_classifiers = [
    'Development Status :: 3 - Alpha',
    'License :: OSI Approved :: MIT License',
    'Programming Language :: Python :: 3.11',
    'Programming Language :: Python :: 3.12',
]
keywords = ['lsst', 'kafka', 'strimzi', 'kubernetes']
readme = Path(__file__).parent / 'README.rst'

# Core dependencies
install_requires = [
    'kopf>=1.35',
    'kubernetes>=28.1.0',
    'structlog>=23.1.0',
    'urllib3',
]

# Test dependencies
tests_require = [
    'pytest>=7.4',
    'pytest-asyncio>=0.21',
    'pyyaml>=6.0',
]
tests_require += install_requires

# Optional dependencies (like for dev)
extras_require = {
    # For development environments
    'dev': tests_require,
}

# Setup-time dependencies
setup_requires = [
    'setuptools_scm',
]

setup(
    name=package_name,
    description=description,
    long_description=readme.read_text(),
    long_description_content_type='text/x-rst',
    author=author,
    author_email=author_email,
    url=url,
    license=license,
    classifiers=pypi_classifiers,
    keywords=keywords,
    package_dir={'': 'src'},
    packages=find_packages(where='src', exclude=['docs', 'tests']),
    python_requires='>=3.11',
    install_requires=install_requires,
    setup_requires=setup_requires,
    extras_require=extras_require,
    use_scm_version={'fallback_version': '0.1.0'},
    include_package_data=True
)
