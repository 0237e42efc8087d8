"""Secure Pipeline Meta information.
   Secure Pipeline frames, encrypts and authenticates byte streams
   over unreliable point-to-point channels.
"""
__title__ = 'secure_pipeline'
__description__ = (
   'Secure Pipeline frames, encrypts and authenticates byte streams '
   'over unreliable point-to-point channels.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/phenobarbital/secure-pipeline'
