"""Secure Store Meta information.
   Secure Store keeps a small key-value mapping encrypted at rest in a local file.
"""
__title__ = 'secure_store'
__description__ = (
   'Secure Store keeps a small key-value mapping '
   'encrypted at rest in a local file.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/phenobarbital/secure-store'
