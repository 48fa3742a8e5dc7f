import os

from setuptools import setup

this_directory = os.path.dirname(__file__)
module_path = os.path.join(this_directory, 'flask_tokenguard.py')
with open(module_path) as f:
    version_line = [line for line in f
                    if line.startswith('__version_info__')][0]
with open(os.path.join(this_directory, 'README.markdown')) as f:
    long_description = f.read()

__version__ = '.'.join(eval(version_line.split('__version_info__ = ')[-1]))

setup(
    name='Flask-TokenGuard',
    version=__version__,
    license='BSD',
    description='Synchronizer token CSRF protection for Flask.',
    long_description=long_description,
    long_description_content_type='text/markdown',
    py_modules=['flask_tokenguard'],
    test_suite='test_tokenguard',
    zip_safe=False,
    platforms='any',
    python_requires='>=3.7',
    install_requires=['Flask', 'Werkzeug'],
    extras_require={
        'test': ['mock'],
    },
    classifiers=[
        'Development Status :: 4 - Beta',
        'Environment :: Web Environment',
        'Framework :: Flask',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: BSD License',
        'Operating System :: OS Independent',
        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Topic :: Internet :: WWW/HTTP :: Dynamic Content',
        'Topic :: Software Development :: Libraries :: Python Modules'
    ]
)
